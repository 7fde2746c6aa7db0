#!/usr/bin/env python3
"""
Bootloader coexistence checks for a decoded dsPIC33F image

The bootloader lives in program page 1 (word addresses 0x000400-0x0007FF,
byte addresses 0x800-0xFFF of the map). User code must leave that page
erased and must start with "goto 0x000800":

    0x040800  ->  bytes 00 08 04 (pad)
    0x000000  ->  bytes 00 00 00 (pad)

The reset goto is redirected to 0x000400 so the bootloader gets control
first; it jumps on to 0x000800 when no download is requested.
"""

from p33f_errors import ImageValidationError
from p33f_hex_image import MemoryImage

BOOTLOADER_START = 0x800
BOOTLOADER_END = 0x1000

# (byte address, expected value); byte 3 is padding
RESET_VECTOR = ((0, 0x00), (1, 0x08), (2, 0x04), (4, 0x00), (5, 0x00), (6, 0x00))
RESET_TARGET_ADDRESS = 1
APPLICATION_TARGET = 0x08
BOOTLOADER_TARGET = 0x04


def check_bootloader_overlap(image: MemoryImage) -> None:
    """Raise if any byte of the bootloader page is programmed"""
    for address in range(BOOTLOADER_START, BOOTLOADER_END):
        value = image[address]
        if value != MemoryImage.ERASED:
            raise ImageValidationError(
                f"Source file overlaps bootloader from 0x000400 to 0x0007FF "
                f"(byte 0x{address:04X} = 0x{value:02X})",
                address=address,
                value=value,
            )


def check_reset_vector(image: MemoryImage) -> None:
    """Raise unless the image starts with goto 0x000800 (or 0x000400 once patched)"""
    for address, expected in RESET_VECTOR:
        if address == RESET_TARGET_ADDRESS and image.reset_vector_patched:
            expected = BOOTLOADER_TARGET
        value = image[address]
        if value != expected:
            raise ImageValidationError(
                f"Code (__reset) must start at address 0x000800 in memory "
                f"(byte {address} = 0x{value:02X}, expected 0x{expected:02X})",
                address=address,
                value=value,
            )


def patch_reset_vector(image: MemoryImage) -> None:
    """Point the reset goto at the bootloader, once"""
    if image.reset_vector_patched:
        return
    image[RESET_TARGET_ADDRESS] = BOOTLOADER_TARGET
    image.reset_vector_patched = True


def validate_image(image: MemoryImage) -> MemoryImage:
    """
    Check an image against the bootloader layout and patch its reset vector

    Args:
        image: Fully decoded memory image, modified in place

    Returns:
        The same image, ready for transfer

    Raises:
        ImageValidationError: If the image overlaps the bootloader page or
            does not start with goto 0x000800
    """
    check_bootloader_overlap(image)
    check_reset_vector(image)
    patch_reset_vector(image)
    return image
