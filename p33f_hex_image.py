#!/usr/bin/env python3
"""
Intel HEX decoding into a dsPIC33F program memory map

Addresses in the HEX file are byte addresses. Every program word occupies
four bytes of the map: three instruction bytes followed by an unimplemented
padding byte, which the HEX file still carries.
"""

import string
from enum import Enum
from typing import Iterator, NamedTuple, Optional, TextIO

from p33f_errors import HexFormatError

# Debug messages control variable
DEBUG_PRINT = False

# Upper address words at or above this value hold configuration fuses
FUSE_ADDRESS_HIGH = 0x8000

_HEX_DIGITS = frozenset(string.hexdigits)


class RecordType(Enum):
    """Intel HEX record types understood by the loader"""
    OTHER = -1
    DATA = 0
    END_OF_FILE = 1
    EXTENDED_SEGMENT_ADDRESS = 2
    EXTENDED_LINEAR_ADDRESS = 4

    @classmethod
    def from_code(cls, code: int) -> "RecordType":
        try:
            return cls(code)
        except ValueError:
            return cls.OTHER


class HexRecord(NamedTuple):
    """One decoded line of an Intel HEX file"""
    byte_count: int
    address: int
    type_code: int
    data: bytes
    checksum: int

    @property
    def record_type(self) -> RecordType:
        return RecordType.from_code(self.type_code)

    @property
    def address_high(self) -> int:
        """Upper 16 address bits carried by an extended linear address record"""
        return int.from_bytes(self.data, byteorder="big")


class HexLoadSummary(NamedTuple):
    records: int
    data_bytes: int
    fuse_bytes_ignored: int


def record_checksum(byte_count: int, address: int, type_code: int, data: bytes) -> int:
    """Two's complement of the sum of all record bytes preceding the checksum"""
    calc = byte_count + ((address >> 8) & 0xFF) + (address & 0xFF) + type_code
    for byte_value in data:
        calc += byte_value
    return (0x100 - (calc & 0xFF)) & 0xFF


def format_record(type_code: int, address: int, data: bytes = b"") -> str:
    """Encode one Intel HEX line (without line terminator)"""
    checksum = record_checksum(len(data), address, type_code, data)
    hex_data = "".join(f"{byte:02X}" for byte in data)
    return f":{len(data):02X}{address:04X}{type_code:02X}{hex_data}{checksum:02X}"


def _read_field(stream: TextIO, width: int, record_number: int) -> int:
    text = stream.read(width)
    if len(text) != width:
        raise HexFormatError("truncated record", record_number)
    if not _HEX_DIGITS.issuperset(text):
        raise HexFormatError(f"invalid hexadecimal field '{text}'", record_number)
    return int(text, 16)


def iter_hex_records(stream: TextIO) -> Iterator[HexRecord]:
    """
    Decode records from a character stream until the end-of-file record

    The stream is consumed forward only. Record types other than the ones
    listed in RecordType end the sequence like an end-of-file record.

    Raises:
        HexFormatError: On a misplaced character, bad digit, truncated
            record, checksum mismatch or extended segment address record
    """
    record_number = 0
    while True:
        c = stream.read(1)
        if c in ("\r", "\n"):
            continue
        if c != ":":
            if c == "":
                raise HexFormatError("end of input before end-of-file record", record_number + 1)
            raise HexFormatError(f"expected ':' but found {c!r}", record_number + 1)

        record_number += 1
        byte_count = _read_field(stream, 2, record_number)
        address = _read_field(stream, 4, record_number)
        type_code = _read_field(stream, 2, record_number)
        record_type = RecordType.from_code(type_code)

        match record_type:
            case RecordType.EXTENDED_SEGMENT_ADDRESS:
                raise HexFormatError("extended segment address records are not supported", record_number)
            case RecordType.EXTENDED_LINEAR_ADDRESS:
                data = _read_field(stream, 4, record_number).to_bytes(2, byteorder="big")
            case RecordType.END_OF_FILE:
                data = b""
            case _:
                data = bytes(_read_field(stream, 2, record_number) for _ in range(byte_count))

        checksum = _read_field(stream, 2, record_number)
        expected = record_checksum(byte_count, address, type_code, data)
        if checksum != expected:
            raise HexFormatError(
                f"checksum error: read 0x{checksum:02X}, expected 0x{expected:02X}", record_number
            )

        if DEBUG_PRINT:
            print(f"Record {record_number}: type={type_code:02X} address=0x{address:04X} bytes={len(data)}")

        yield HexRecord(byte_count, address, type_code, data, checksum)

        if record_type in (RecordType.END_OF_FILE, RecordType.OTHER):
            return


class MemoryImage:
    """Byte addressed program memory map, initially erased"""

    SIZE = 1 << 20
    ERASED = 0xFF

    def __init__(self, size: int = SIZE):
        self.data = bytearray([self.ERASED]) * size
        self.reset_vector_patched = False

    def __len__(self) -> int:
        return len(self.data)

    def __getitem__(self, address: int) -> int:
        if not 0 <= address < len(self.data):
            raise IndexError(f"address 0x{address:06X} outside memory map")
        return self.data[address]

    def __setitem__(self, address: int, value: int):
        if not 0 <= address < len(self.data):
            raise IndexError(f"address 0x{address:06X} outside memory map")
        self.data[address] = value

    def read(self, address: int, length: int) -> bytes:
        return bytes(self.data[address:address + length])

    def write(self, address: int, data: bytes):
        end = address + len(data)
        if address < 0 or end > len(self.data):
            raise IndexError(f"0x{address:06X}..0x{end:06X} outside memory map")
        self.data[address:end] = data

    def is_programmed(self, address: int) -> bool:
        return self.data[address] != self.ERASED

    def max_address(self) -> Optional[int]:
        """Highest address holding a non-erased byte, None for an empty image"""
        used = len(self.data.rstrip(bytes([self.ERASED])))
        return used - 1 if used else None

    def segments(self) -> list[tuple[int, bytes]]:
        """Build contiguous runs (address, data) of programmed bytes."""
        segments: list[tuple[int, bytes]] = []
        start = None
        for addr, value in enumerate(self.data):
            if value != self.ERASED:
                if start is None:
                    start = addr
            elif start is not None:
                segments.append((start, bytes(self.data[start:addr])))
                start = None
        if start is not None:
            segments.append((start, bytes(self.data[start:])))
        return segments

    def write_intel_hex(self, stream: TextIO, bytes_per_line: int = 16) -> None:
        """
        Write the programmed bytes as Intel HEX

        Args:
            stream: Text output
            bytes_per_line: Maximum payload of each data record
        """
        extended_address = 0

        for start, data in self.segments():
            offset = 0
            while offset < len(data):
                address = start + offset
                current_extended = (address >> 16) & 0xFFFF

                # Write Extended Linear Address record if needed (for addresses > 64KB)
                if current_extended != extended_address:
                    extended_address = current_extended
                    stream.write(format_record(0x04, 0, extended_address.to_bytes(2, byteorder="big")) + "\n")

                # Data records never cross a 64KB boundary
                chunk_size = min(bytes_per_line, 0x10000 - (address & 0xFFFF), len(data) - offset)
                chunk = data[offset:offset + chunk_size]
                stream.write(format_record(0x00, address & 0xFFFF, chunk) + "\n")
                offset += chunk_size

        # Write End Of File record
        stream.write(format_record(0x01, 0) + "\n")


def load_hex(stream: TextIO, image: MemoryImage) -> HexLoadSummary:
    """
    Decode an Intel HEX stream into the memory image

    Data located in the fuse area (upper address word >= 0x8000) is skipped.

    Returns:
        Counts of records read, bytes stored and fuse bytes skipped
    """
    address_high = 0
    records = 0
    data_bytes = 0
    fuse_bytes = 0

    for record in iter_hex_records(stream):
        records += 1
        match record.record_type:
            case RecordType.DATA:
                if address_high >= FUSE_ADDRESS_HIGH:
                    fuse_bytes += len(record.data)
                    continue
                address = (address_high << 16) + record.address
                if address + len(record.data) > len(image):
                    raise HexFormatError(
                        f"data at 0x{address:06X} lies outside the {len(image)} byte memory map", records
                    )
                image.write(address, record.data)
                data_bytes += len(record.data)
            case RecordType.EXTENDED_LINEAR_ADDRESS:
                address_high = record.address_high
                if DEBUG_PRINT and address_high >= FUSE_ADDRESS_HIGH:
                    print(f"Upper address 0x{address_high:04X} selects fuse data, ignoring")

    return HexLoadSummary(records, data_bytes, fuse_bytes)


def load_hex_file(filename: str, image: Optional[MemoryImage] = None) -> tuple[MemoryImage, HexLoadSummary]:
    """Parse an Intel HEX file into a new (or the given) memory image."""
    if image is None:
        image = MemoryImage()
    # latin-1 maps every byte to one character, so stray bytes reach the parser
    with open(filename, "r", encoding="latin-1") as f:
        summary = load_hex(f, image)
    return image, summary
