#!/usr/bin/env python3
"""
PIC 33F Bootloader command line loader

    p33f-loader filename.hex [/COMx] [/PORT=device] [/H-] [/H+] [/V]

Stages run in order and the first failure stops the download:
read HEX file, validate image, open port, find device, send pages.
"""

import os
import sys
from typing import Callable, Optional, TypedDict

import p33f_hex_image
import p33f_programmer
import p33f_terminal
from p33f_errors import LoaderError, TransportError, UsageError
from p33f_hex_image import MemoryImage, load_hex_file
from p33f_image_validator import validate_image
from p33f_programmer import Dspic33Bootloader, TransferSummary
from p33f_terminal import TerminalSession

DEFAULT_PORT = "COM1"

USAGE = """Usage: p33f-loader filename.hex [/COMx] [/PORT=device] [/H-] [/H+] [/V]
         /COMx         selects a port (default is COM1)
         /PORT=device  selects a port by device name (e.g. /dev/ttyUSB0)
         /H-           closes a hyperterminal session before programming
         /H+           reopens a hyperterminal session after programming
         /V            prints protocol debug messages"""


class LoaderOptions(TypedDict):
    filename: str
    port: str
    close_terminal: bool
    reopen_terminal: bool
    verbose: bool


def _parse_switch(arg: str, options: LoaderOptions) -> bool:
    switch = arg[1:]
    upper = switch.upper()
    if upper == "H-":
        options["close_terminal"] = True
    elif upper == "H+":
        options["reopen_terminal"] = True
    elif upper == "V":
        options["verbose"] = True
    elif upper.startswith("COM") and switch[3:].isdigit():
        options["port"] = switch
    elif upper.startswith("PORT=") and len(switch) > 5:
        options["port"] = switch[5:]
    else:
        return False
    return True


def parse_arguments(argv: list[str]) -> LoaderOptions:
    """
    Parse the loader's switches and file name

    Args:
        argv: Arguments without the program name

    Raises:
        UsageError: On an unknown switch or a missing/extra file name
    """
    options: LoaderOptions = {
        "filename": "",
        "port": DEFAULT_PORT,
        "close_terminal": False,
        "reopen_terminal": False,
        "verbose": False,
    }
    filenames = []

    for arg in argv:
        if arg.startswith("/"):
            if _parse_switch(arg, options):
                continue
            # absolute paths are allowed as file names
            if "/" not in arg[1:] and not os.path.exists(arg):
                raise UsageError(f"Invalid switch detected: {arg}")
        filenames.append(arg)

    if not filenames:
        raise UsageError("Missing argument(s)")
    if len(filenames) > 1:
        raise UsageError(f"Too many arguments: {' '.join(filenames)}")

    options["filename"] = filenames[0]
    return options


def set_verbose(verbose: bool):
    for module in (p33f_hex_image, p33f_programmer, p33f_terminal):
        module.DEBUG_PRINT = verbose


def read_image(filename: str) -> MemoryImage:
    print("Reading file... ", end="", flush=True)
    try:
        image, summary = load_hex_file(filename)
    except OSError as ex:
        raise LoaderError(f"error opening file: {ex}") from ex
    if summary.fuse_bytes_ignored:
        print("ignoring fuse data... ", end="")
    print(f"processed {summary.records} records")
    return image


def open_bootloader(port: str, factory: Callable[[str], Dspic33Bootloader]) -> Dspic33Bootloader:
    print(f"Opening {port}... ", end="", flush=True)
    try:
        bootloader = factory(port)
    except TransportError:
        print("could not open port")
        ports = Dspic33Bootloader.get_available_ports()
        if ports:
            print(f"Available ports: {', '.join(ports)}")
        raise
    print("successful")
    return bootloader


def find_device(bootloader: Dspic33Bootloader) -> None:
    print("Finding target device..", end="", flush=True)

    def show_attempt(attempt: int, max_attempts: int):
        print(".", end="", flush=True)

    try:
        bootloader.find_device(attempt_callback=show_attempt)
    except LoaderError:
        print(" error")
        raise
    print(" successful")


def download(bootloader: Dspic33Bootloader, image: MemoryImage) -> TransferSummary:
    plan = bootloader.describe_transfer(image)
    if plan.pages:
        print(
            f"Downloading {plan.program_words} program words ({plan.pages} pages) "
            f"from 0x000000 to 0x{plan.last_word_address:06x}"
        )
    else:
        print("Downloading 0 program words (0 pages)")
    print("  (bootloader page from 0x000400 to 0x0007FF will be skipped)")

    def show_progress(current: int, total: int):
        if total:
            print(f"\r  page {current}/{total}", end="", flush=True)
            if current == total:
                print()

    return bootloader.program(image, progress_callback=show_progress)


def run(
    options: LoaderOptions,
    bootloader_factory: Callable[[str], Dspic33Bootloader] = Dspic33Bootloader.open,
    session: Optional[TerminalSession] = None,
) -> TransferSummary:
    """
    Run every stage of a download

    Nothing is sent to the device unless the image passes validation.

    Raises:
        LoaderError: From the first failing stage
    """
    image = read_image(options["filename"])
    validate_image(image)

    session = session or TerminalSession()
    if options["close_terminal"] and session.close():
        print("Closing hyperterminal session")

    bootloader = open_bootloader(options["port"], bootloader_factory)
    try:
        find_device(bootloader)
        summary = download(bootloader, image)
    finally:
        bootloader.close()

    if options["reopen_terminal"] and session.reopen():
        print("Reopening hyperterminal session")
    return summary


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point"""
    print("\nPIC 33F Bootloader\n")
    try:
        options = parse_arguments(sys.argv[1:] if argv is None else argv)
    except UsageError as ex:
        print(ex)
        print(USAGE)
        return 2

    set_verbose(options["verbose"])
    try:
        run(options)
    except LoaderError as ex:
        print(f"Error: {ex}")
        return 1

    print("Successful")
    return 0


if __name__ == "__main__":
    sys.exit(main())
