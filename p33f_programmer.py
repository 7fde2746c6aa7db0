#!/usr/bin/env python3
"""
dsPIC33F serial bootloader protocol

Download sequence, each step waits for the device before the next one:
    1. "33F" keyphrase until the bootloader answers 'k'
    2. page count (low, high) + checksum, checksum echoed back
    3. per page: 3 address bytes, 1536 data bytes (padding bytes removed),
       checksum; checksum echoed back, then 'd' once the page is written
"""

import time
from typing import Callable, NamedTuple, Optional, TypedDict, TypeVar

import serial
import serial.tools.list_ports

from p33f_errors import DeviceNotFoundError, ProtocolError, TransportError
from p33f_hex_image import MemoryImage

# Debug messages control variable
DEBUG_PRINT = False

T = TypeVar("T")


class BootloaderProperties(TypedDict):
    """Properties of the resident bootloader"""
    keyphrase: bytes
    ack: bytes
    done_flag: bytes
    page_bytes: int
    bootloader_start: int
    bootloader_end: int
    discovery_attempts: int
    page_commit_delay: float


class TransferSummary(NamedTuple):
    pages: int
    program_words: int
    last_word_address: Optional[int]


def retry(action: Callable[[], T], succeeded: Callable[[T], bool], max_attempts: int) -> tuple[bool, int]:
    """
    Run action until its result satisfies succeeded, at most max_attempts times

    Returns:
        Tuple of (success, attempts made)
    """
    for attempt in range(1, max_attempts + 1):
        if succeeded(action()):
            return True, attempt
    return False, max_attempts


def _format_byte(value: Optional[int]) -> str:
    return "--" if value is None else f"{value:02x}"


class Dspic33Bootloader:
    """Class for downloading a memory image to the bootloader via serial port"""

    BAUD_RATE = 38400
    READ_TIMEOUT = 1.0
    WRITE_TIMEOUT = 1.0

    BOOTLOADER_PROPERTIES: BootloaderProperties = {
        "keyphrase": b"33F",
        "ack": b"k",
        "done_flag": b"d",
        "page_bytes": 2048,             # 512 instructions
        "bootloader_start": 0x800,      # word address 0x000400
        "bootloader_end": 0x1000,       # word address 0x000800
        "discovery_attempts": 30,
        "page_commit_delay": 0.02,
    }

    def __init__(self, serial_port, properties: Optional[BootloaderProperties] = None):
        """
        Args:
            serial_port: Open pyserial port (or any object with write/flush/read)
            properties: Bootloader description, defaults to BOOTLOADER_PROPERTIES
        """
        self.serial_port = serial_port
        self.props = properties or self.BOOTLOADER_PROPERTIES
        self.page_commit_delay = self.props["page_commit_delay"]

    @classmethod
    def open(cls, port: str) -> "Dspic33Bootloader":
        return cls(open_serial_port(port, cls.BAUD_RATE, cls.READ_TIMEOUT, cls.WRITE_TIMEOUT))

    def close(self):
        """Close the serial port connection"""
        if self.serial_port and self.serial_port.is_open:
            self.serial_port.close()

    @staticmethod
    def get_available_ports():
        """
        Get list of available serial ports

        Returns:
            List of port names
        """
        ports = serial.tools.list_ports.comports()
        return sorted([port.device for port in ports])

    def _send_bytes(self, data: bytes):
        """Send raw bytes and wait until they are on the wire"""
        try:
            bytes_written = self.serial_port.write(data)
            self.serial_port.flush()
        except serial.SerialException as ex:
            raise TransportError(f"serial write failed: {ex}") from ex
        if DEBUG_PRINT:
            print(f"Sending {bytes_written} raw bytes")

    def _read_byte(self) -> Optional[int]:
        """Read one byte, None on timeout"""
        try:
            data = self.serial_port.read(1)
        except serial.SerialException as ex:
            raise TransportError(f"serial read failed: {ex}") from ex
        if DEBUG_PRINT:
            print(f"Receiving {data!r}")
        return data[0] if data else None

    def find_device(self, attempt_callback: Optional[Callable[[int, int], None]] = None) -> int:
        """
        Send the keyphrase until the bootloader acknowledges it

        Args:
            attempt_callback: Called with (attempt, max_attempts) before each try

        Returns:
            Number of attempts used

        Raises:
            DeviceNotFoundError: If no acknowledgement after discovery_attempts tries
        """
        max_attempts = self.props["discovery_attempts"]
        attempt_count = 0

        def attempt() -> Optional[int]:
            nonlocal attempt_count
            attempt_count += 1
            if attempt_callback:
                attempt_callback(attempt_count, max_attempts)
            self._send_bytes(self.props["keyphrase"])
            return self._read_byte()

        found, attempts = retry(attempt, lambda reply: reply == self.props["ack"][0], max_attempts)
        if not found:
            raise DeviceNotFoundError(f"No bootloader answered after {attempts} attempts", attempts)

        if DEBUG_PRINT:
            print(f"Bootloader found after {attempts} attempt(s)")
        return attempts

    def compute_page_count(self, image: MemoryImage) -> int:
        """
        Number of pages to send: highest programmed address / page size

        The bootloader page is never sent, so the count is one less than the
        number of pages spanned by the image.
        """
        max_address = image.max_address()
        if max_address is None:
            return 0
        return max_address // self.props["page_bytes"]

    def describe_transfer(self, image: MemoryImage) -> TransferSummary:
        """Pages, instructions and last word address the download will cover"""
        page_bytes = self.props["page_bytes"]
        pages = self.compute_page_count(image)
        if not pages:
            return TransferSummary(0, 0, None)

        # first page at 0, the rest start after the bootloader page
        last_page_start = 0 if pages == 1 else self.props["bootloader_end"] + (pages - 2) * page_bytes
        last_word_address = (last_page_start + page_bytes) // 2 - 1
        return TransferSummary(pages, pages * page_bytes // 4, last_word_address)

    def send_header(self, page_count: int):
        """
        Send the 16-bit page count and check the echoed checksum

        Raises:
            ProtocolError: If the echoed checksum differs
        """
        if not 0 <= page_count <= 0xFFFF:
            raise ValueError(f"Page count {page_count} does not fit in 16 bits")

        low = page_count & 0xFF
        high = (page_count >> 8) & 0xFF
        checksum = (low + high) & 0xFF

        if DEBUG_PRINT:
            print(f"Sending header: pages={page_count}, checksum={checksum:02x}")

        self._send_bytes(bytes([low, high, checksum]))
        echo = self._read_byte()
        if echo != checksum:
            raise ProtocolError(
                f"Checksum error in header: TX {checksum:02x}, RX {_format_byte(echo)}",
                sent=checksum,
                received=echo,
            )

    def build_page(self, image: MemoryImage, addr: int) -> tuple[bytes, int]:
        """
        Frame one page for transmission

        Args:
            image: Patched memory image
            addr: Byte address of the page start

        Returns:
            Tuple of (address bytes + data bytes, checksum)
        """
        frame = bytearray([(addr >> 1) & 0xFF, (addr >> 9) & 0xFF, (addr >> 17) & 0xFF])
        block = image.read(addr, self.props["page_bytes"])
        # write only LSW and LSB of MSW, the padding byte is not implemented
        frame.extend(value for offset, value in enumerate(block) if offset & 3 != 3)
        return bytes(frame), sum(frame) & 0xFF

    def transfer_page(self, image: MemoryImage, addr: int) -> int:
        """
        Send one page and wait for the device to commit it

        Args:
            image: Patched memory image
            addr: Byte address of the page start

        Returns:
            Byte address of the next page

        Raises:
            ProtocolError: On checksum echo or write done flag mismatch
        """
        word_address = addr >> 1
        frame, checksum = self.build_page(image, addr)

        if DEBUG_PRINT:
            print(f"Sending page at word address 0x{word_address:06x}, checksum={checksum:02x}")

        self._send_bytes(frame + bytes([checksum]))
        echo = self._read_byte()
        if echo != checksum:
            raise ProtocolError(
                f"Checksum error at word address 0x{word_address:06x}: TX {checksum:02x}, RX {_format_byte(echo)}",
                word_address=word_address,
                sent=checksum,
                received=echo,
            )

        addr += self.props["page_bytes"]
        # skip past the bootloader page
        if addr == self.props["bootloader_start"]:
            addr = self.props["bootloader_end"]

        done = self._read_byte()
        if done != self.props["done_flag"][0]:
            raise ProtocolError(
                f"Error in write done flag at word address 0x{word_address:06x}: RX {_format_byte(done)}",
                word_address=word_address,
                received=done,
            )

        if self.page_commit_delay:
            time.sleep(self.page_commit_delay)
        return addr

    def program(
        self,
        image: MemoryImage,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> TransferSummary:
        """
        Send the header and every page of a validated image

        The device must already have been found with find_device(). No page
        is retried: the first mismatch aborts the download.

        Args:
            image: Validated and patched memory image
            progress_callback: Called with (pages done, total pages)

        Returns:
            Summary of what was sent
        """
        summary = self.describe_transfer(image)
        self.send_header(summary.pages)

        if progress_callback:
            progress_callback(0, summary.pages)

        addr = 0
        for page in range(summary.pages):
            addr = self.transfer_page(image, addr)
            if progress_callback:
                progress_callback(page + 1, summary.pages)

        if DEBUG_PRINT:
            print(f"Download of {summary.pages} page(s) completed successfully")
        return summary


def open_serial_port(
    port: str,
    baudrate: int = Dspic33Bootloader.BAUD_RATE,
    timeout: float = Dspic33Bootloader.READ_TIMEOUT,
    write_timeout: float = Dspic33Bootloader.WRITE_TIMEOUT,
) -> serial.Serial:
    """
    Open the port 8N1 for binary transfers without flow control

    Raises:
        TransportError: If the port cannot be opened or configured
    """
    try:
        serial_port = serial.Serial(
            port=port,
            baudrate=baudrate,
            parity=serial.PARITY_NONE,
            bytesize=serial.EIGHTBITS,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
            write_timeout=write_timeout,
            xonxoff=False,
            rtscts=False,
            dsrdtr=False,
        )
    except (serial.SerialException, ValueError) as ex:
        raise TransportError(f"could not open port {port}: {ex}") from ex

    try:
        serial_port.dtr = True
        serial_port.rts = True
        serial_port.reset_input_buffer()
        serial_port.reset_output_buffer()
    except serial.SerialException as ex:
        serial_port.close()
        raise TransportError(f"error configuring port {port}: {ex}") from ex

    if DEBUG_PRINT:
        print(f"Port {port} opened at {baudrate} baud")
    return serial_port
