import pytest
import serial

import p33f_programmer
from fakes import FakeBootloaderDevice, FakeSerial
from p33f_errors import DeviceNotFoundError, ProtocolError, TransportError
from p33f_hex_image import MemoryImage
from p33f_image_validator import validate_image
from p33f_programmer import Dspic33Bootloader, TransferSummary, open_serial_port, retry

RESET_VECTOR = bytes([0x00, 0x08, 0x04, 0x00, 0x00, 0x00, 0x00])


def make_bootloader(port) -> Dspic33Bootloader:
    bootloader = Dspic33Bootloader(port)
    bootloader.page_commit_delay = 0
    return bootloader


def subsample(block: bytes) -> bytes:
    return bytes(block[i] for i in range(len(block)) if i % 4 != 3)


def patterned_image(max_address: int) -> MemoryImage:
    image = MemoryImage()
    image.write(0, RESET_VECTOR)
    for address in range(0x1000, max_address + 1, 7):
        image[address] = address & 0x7F
    image[max_address] = 0x5A
    validate_image(image)
    return image


class TestRetry:

    def test_first_attempt(self):
        calls = []
        assert retry(lambda: calls.append(1) or True, bool, 5) == (True, 1)
        assert len(calls) == 1

    def test_success_on_last_attempt(self):
        results = iter([0, 0, 0, 1])
        assert retry(lambda: next(results), lambda value: value == 1, 4) == (True, 4)

    def test_exhausted(self):
        calls = []
        assert retry(lambda: calls.append(1), lambda value: False, 3) == (False, 3)
        assert len(calls) == 3


class TestFindDevice:

    def test_immediate_ack(self):
        port = FakeSerial(b"k")
        assert make_bootloader(port).find_device() == 1
        assert port.writes == [b"33F"]
        assert port.flushes == 1

    def test_ack_on_thirtieth_attempt(self):
        port = FakeSerial(b"\x00" * 29 + b"k")
        assert make_bootloader(port).find_device() == 30
        assert port.writes == [b"33F"] * 30

    def test_ack_after_timeouts(self):
        device = FakeBootloaderDevice(ack_on=12)
        assert make_bootloader(device).find_device() == 12

    def test_never_acknowledged(self):
        port = FakeSerial()
        attempts = []
        with pytest.raises(DeviceNotFoundError) as excinfo:
            make_bootloader(port).find_device(attempt_callback=lambda n, total: attempts.append((n, total)))
        assert excinfo.value.attempts == 30
        assert port.writes == [b"33F"] * 30
        assert port.reads == 30
        assert attempts == [(n, 30) for n in range(1, 31)]

    def test_wrong_replies(self):
        port = FakeSerial(b"K" * 40)
        with pytest.raises(DeviceNotFoundError):
            make_bootloader(port).find_device()
        assert len(port.writes) == 30

    def test_write_failure(self):
        class BrokenPort(FakeSerial):
            def write(self, data):
                raise serial.SerialTimeoutException("Write timeout")

        with pytest.raises(TransportError):
            make_bootloader(BrokenPort()).find_device()


class TestPageCount:

    @pytest.mark.parametrize("max_address, pages", [
        (5, 0),
        (0x7FF, 0),
        (0x800, 1),
        (0xFFF, 1),
        (0x1000, 2),
        (0xFFFFF, 511),
    ])
    def test_compute_page_count(self, max_address, pages):
        image = MemoryImage()
        image[max_address] = 0x00
        assert make_bootloader(FakeSerial()).compute_page_count(image) == pages

    def test_empty_image(self):
        assert make_bootloader(FakeSerial()).compute_page_count(MemoryImage()) == 0

    def test_describe_transfer(self):
        bootloader = make_bootloader(FakeSerial())
        image = MemoryImage()
        image[5] = 0
        assert bootloader.describe_transfer(image) == TransferSummary(0, 0, None)
        image[0xFFF] = 0
        assert bootloader.describe_transfer(image) == TransferSummary(1, 512, 0x3FF)
        image[0x1800] = 0
        assert bootloader.describe_transfer(image) == TransferSummary(3, 1536, 0xFFF)


class TestHeader:

    def test_header_bytes(self):
        port = FakeSerial(bytes([0x46]))
        make_bootloader(port).send_header(0x1234)
        assert port.written == bytes([0x34, 0x12, 0x46])

    def test_checksum_wraps(self):
        port = FakeSerial(bytes([0x00]))
        make_bootloader(port).send_header(0x01FF)
        assert port.written == bytes([0xFF, 0x01, 0x00])

    def test_checksum_mismatch(self):
        port = FakeSerial(bytes([0x47]))
        with pytest.raises(ProtocolError, match="header") as excinfo:
            make_bootloader(port).send_header(0x1234)
        assert excinfo.value.sent == 0x46
        assert excinfo.value.received == 0x47

    def test_no_echo(self):
        with pytest.raises(ProtocolError) as excinfo:
            make_bootloader(FakeSerial()).send_header(3)
        assert excinfo.value.received is None

    def test_page_count_range(self):
        with pytest.raises(ValueError):
            make_bootloader(FakeSerial()).send_header(0x10000)


class TestPages:

    def test_build_page_skips_padding(self):
        image = MemoryImage()
        for offset in range(2048):
            image[0x1000 + offset] = 0xAA if offset % 4 == 3 else offset & 0x7F
        frame, checksum = make_bootloader(FakeSerial()).build_page(image, 0x1000)
        assert len(frame) == 3 + 1536
        assert frame[:3] == bytes([0x00, 0x08, 0x00])
        assert 0xAA not in frame[3:]
        assert frame[3:] == subsample(image.read(0x1000, 2048))
        assert checksum == sum(frame) & 0xFF

    def test_build_page_address_bytes(self):
        frame, _ = make_bootloader(FakeSerial()).build_page(MemoryImage(), 0xFF800)
        assert frame[:3] == bytes([0x00, 0xFC, 0x07])

    def test_transfer_first_page_skips_bootloader(self):
        image = patterned_image(0x1000)
        frame, checksum = make_bootloader(FakeSerial()).build_page(image, 0)
        port = FakeSerial(bytes([checksum]) + b"d")
        assert make_bootloader(port).transfer_page(image, 0) == 0x1000
        assert port.written == frame + bytes([checksum])
        assert port.flushes == 1

    def test_transfer_later_page(self):
        image = patterned_image(0x2000)
        _, checksum = make_bootloader(FakeSerial()).build_page(image, 0x1800)
        port = FakeSerial(bytes([checksum]) + b"d")
        assert make_bootloader(port).transfer_page(image, 0x1800) == 0x2000

    def test_checksum_echo_mismatch(self):
        image = patterned_image(0x1000)
        _, checksum = make_bootloader(FakeSerial()).build_page(image, 0x1000)
        port = FakeSerial(bytes([checksum ^ 0xFF]) + b"d")
        with pytest.raises(ProtocolError, match="0x000800") as excinfo:
            make_bootloader(port).transfer_page(image, 0x1000)
        assert excinfo.value.word_address == 0x800
        assert excinfo.value.sent == checksum
        assert port.reads == 1

    @pytest.mark.parametrize("reply", [b"e", b""])
    def test_done_flag(self, reply):
        image = patterned_image(0x1000)
        _, checksum = make_bootloader(FakeSerial()).build_page(image, 0)
        port = FakeSerial(bytes([checksum]) + reply)
        with pytest.raises(ProtocolError, match="done flag") as excinfo:
            make_bootloader(port).transfer_page(image, 0)
        assert excinfo.value.word_address == 0

    def test_commit_delay(self, monkeypatch):
        delays = []
        monkeypatch.setattr(p33f_programmer.time, "sleep", delays.append)
        image = patterned_image(0x1000)
        _, checksum = make_bootloader(FakeSerial()).build_page(image, 0)
        port = FakeSerial(bytes([checksum]) + b"d")
        Dspic33Bootloader(port).transfer_page(image, 0)
        assert delays == [0.02]


class TestProgram:

    def test_download(self):
        image = patterned_image(0x2345)
        device = FakeBootloaderDevice()
        bootloader = make_bootloader(device)
        progress = []

        bootloader.find_device()
        summary = bootloader.program(image, progress_callback=lambda current, total: progress.append(current))

        assert summary.pages == 4
        assert device.page_count == 4
        assert [word for word, _ in device.pages] == [0x000, 0x800, 0xC00, 0x1000]
        for word_address, data in device.pages:
            address = 0 if word_address == 0 else word_address * 2
            assert len(data) == 1536
            assert data == subsample(image.read(address, 2048))
        assert device.pages[0][1][:6] == bytes([0x00, 0x04, 0x04, 0x00, 0x00, 0x00])
        assert progress == [0, 1, 2, 3, 4]
        assert device.replies == bytearray()

    def test_reset_vector_only(self):
        image = MemoryImage()
        image.write(0, RESET_VECTOR[:6])
        validate_image(image)
        device = FakeBootloaderDevice()
        bootloader = make_bootloader(device)
        bootloader.find_device()
        assert bootloader.program(image).pages == 0
        assert device.page_count == 0
        assert device.pages == []

    def test_stops_at_first_bad_page(self):
        image = patterned_image(0x2345)
        device = FakeBootloaderDevice(bad_echo_page=1)
        bootloader = make_bootloader(device)
        bootloader.find_device()
        with pytest.raises(ProtocolError) as excinfo:
            bootloader.program(image)
        assert excinfo.value.word_address == 0x800
        assert len(device.pages) == 2

    def test_bad_done_flag_aborts(self):
        image = patterned_image(0x2345)
        device = FakeBootloaderDevice(done_flag=b"x")
        bootloader = make_bootloader(device)
        bootloader.find_device()
        with pytest.raises(ProtocolError, match="done flag"):
            bootloader.program(image)
        assert len(device.pages) == 1


class TestSerialPort:

    def test_open_failure(self, monkeypatch):
        def fail(**kwargs):
            raise serial.SerialException("could not open port 'COM9'")

        monkeypatch.setattr(p33f_programmer.serial, "Serial", fail)
        with pytest.raises(TransportError, match="COM9"):
            open_serial_port("COM9")

    def test_open_settings(self, monkeypatch):
        opened = {}

        class Port(FakeSerial):
            def __init__(self, **kwargs):
                super().__init__()
                opened.update(kwargs)

            def reset_input_buffer(self):
                pass

            def reset_output_buffer(self):
                pass

        monkeypatch.setattr(p33f_programmer.serial, "Serial", Port)
        port = open_serial_port("COM3")
        assert opened["port"] == "COM3"
        assert opened["baudrate"] == 38400
        assert opened["parity"] == serial.PARITY_NONE
        assert opened["stopbits"] == serial.STOPBITS_ONE
        assert opened["bytesize"] == serial.EIGHTBITS
        assert opened["xonxoff"] is False
        assert opened["rtscts"] is False
        assert port.dtr is True
        assert port.rts is True

    def test_close(self):
        port = FakeSerial()
        make_bootloader(port).close()
        assert not port.is_open
