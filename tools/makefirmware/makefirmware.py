#!/usr/bin/env python3
"""
Convert an Intel-HEX-like record file into the raw PETdisk firmware image.

The image is exactly <programsize> bytes. Gaps between records and the space
after the last record are filled with 0xFF. Only the byte count, address and
inline data of each record are used; checksums, end-of-file and extended
address records get no special treatment.
"""

from __future__ import annotations

import argparse
import io
import re
import sys
from pathlib import Path
from typing import BinaryIO, NamedTuple

FILL_BYTE = 0xFF
RECORD_MARK = ":"
DATA_OFFSET = 8

NON_HEX_RE = re.compile(r"[^0-9A-Fa-f]")
HEX_FIELD_RE = re.compile(r"[0-9A-Fa-f]*")


class FirmwareError(Exception):
    pass


class UsageError(FirmwareError, ValueError):
    pass


class InputReadError(FirmwareError):
    pass


class OutputWriteError(FirmwareError):
    pass


class MalformedRecordError(FirmwareError):
    pass


def hexdec(field: str) -> int:
    """Decode a hex field, ignoring any non-hex character. Never raises."""
    digits = NON_HEX_RE.sub("", field)
    return int(digits, 16) if digits else 0


class Record(NamedTuple):
    byte_count: int
    address: int
    record_type: int
    text: str

    def data_field(self, index: int) -> str:
        start = DATA_OFFSET + 2 * index
        return self.text[start:start + 2]

    def data(self) -> bytes:
        return bytes(hexdec(self.data_field(i)) for i in range(self.byte_count))


def split_records(text: str) -> list[str]:
    # The first chunk is whatever precedes the first ':' and is usually empty.
    return text.split(RECORD_MARK)


def parse_record(text: str, strict: bool = False) -> Record | None:
    if len(text) <= 2:
        return None
    if strict:
        check_record(text)
    return Record(
        byte_count=hexdec(text[0:2]),
        address=hexdec(text[2:6]),
        record_type=hexdec(text[6:8]),
        text=text,
    )


def check_record(text: str) -> None:
    header = text[:DATA_OFFSET]
    if len(header) < DATA_OFFSET or not HEX_FIELD_RE.fullmatch(header):
        raise MalformedRecordError(f"bad record header {header!r}")
    count = int(header[0:2], 16)
    data = text[DATA_OFFSET:DATA_OFFSET + 2 * count]
    if len(data) < 2 * count:
        raise MalformedRecordError(f"record declares {count} bytes but holds {len(data) // 2}")
    if not HEX_FIELD_RE.fullmatch(data):
        raise MalformedRecordError(f"non-hex data {data!r}")


class HexToBinConverter:
    """
    Lay records out into a fixed-size image, writing to a binary sink as it
    goes.

    prev_address is the next offset the records expect to be written. A record
    starting past it is preceded by fill bytes. A record starting before it is
    appended at the current position anyway; the sink is never rewound.
    Conversion stops as soon as program_size bytes have been written, even in
    the middle of a record.
    """

    def __init__(
        self,
        out: BinaryIO,
        program_size: int,
        fill: int = FILL_BYTE,
        strict: bool = False,
        verbose: bool = False,
    ):
        if program_size < 0:
            raise UsageError(f"program size must not be negative: {program_size}")
        self.out = out
        self.program_size = program_size
        self.fill = fill & 0xFF
        self.strict = strict
        self.verbose = verbose
        self.prev_address = 0
        self.total_bytes = 0
        self.data_bytes = 0
        self.fill_bytes = 0

    @property
    def full(self) -> bool:
        return self.total_bytes >= self.program_size

    def log(self, msg: str) -> None:
        if self.verbose:
            print(msg)

    def emit(self, value: int) -> bool:
        self.out.write(bytes((value,)))
        self.total_bytes += 1
        return self.full

    def convert(self, text: str) -> int:
        if not self.full:
            for index, chunk in enumerate(split_records(text)):
                if self.place(index, chunk):
                    self.log(f"output {self.program_size} bytes (size reached)")
                    return self.total_bytes
        self.log(f"{self.total_bytes} bytes written")
        self.pad()
        return self.total_bytes

    def place(self, index: int, chunk: str) -> bool:
        """Write one record; True once the image is full."""
        try:
            record = parse_record(chunk, self.strict)
        except MalformedRecordError as exc:
            raise MalformedRecordError(f"record {index}: {exc}") from exc
        if record is None:
            return False

        self.log(
            f"record {index}: count {record.byte_count} addr {record.address:04X} "
            f"prev {self.prev_address:04X} type {record.record_type:02X}"
        )
        if record.address > self.prev_address:
            self.log(f"  fill {record.address - self.prev_address} bytes")
            while record.address > self.prev_address:
                self.fill_bytes += 1
                if self.emit(self.fill):
                    return True
                self.prev_address += 1
        elif record.address < self.prev_address and record.byte_count:
            print(
                f"WARNING: record {index} at {record.address:04X} overlaps "
                f"{self.prev_address:04X}, appending in source order",
                file=sys.stderr,
            )

        # Moves before the data is written, so a record cut off by the size
        # cap still advances the cursor past its full span.
        self.prev_address = record.address + record.byte_count

        for value in record.data():
            self.data_bytes += 1
            if self.emit(value):
                return True
        return False

    def pad(self) -> None:
        remaining = self.program_size - self.total_bytes
        if remaining <= 0:
            return
        self.log(f"remaining {remaining} bytes")
        self.out.write(bytes((self.fill,)) * remaining)
        self.total_bytes += remaining
        self.fill_bytes += remaining


def convert(
    text: str,
    program_size: int,
    out: BinaryIO,
    fill: int = FILL_BYTE,
    strict: bool = False,
    verbose: bool = False,
) -> HexToBinConverter:
    converter = HexToBinConverter(out, program_size, fill=fill, strict=strict, verbose=verbose)
    converter.convert(text)
    return converter


def convert_bytes(text: str, program_size: int, fill: int = FILL_BYTE, strict: bool = False) -> bytes:
    buf = io.BytesIO()
    convert(text, program_size, buf, fill=fill, strict=strict)
    return buf.getvalue()


def convert_file(
    src: Path,
    dst: Path,
    program_size: int,
    fill: int = FILL_BYTE,
    strict: bool = False,
    verbose: bool = False,
) -> HexToBinConverter:
    try:
        text = src.read_text(errors="ignore")
    except OSError as exc:
        raise InputReadError(f"cannot read {src}: {exc.strerror or exc}") from exc
    try:
        with open(dst, "wb") as out:
            return convert(text, program_size, out, fill=fill, strict=strict, verbose=verbose)
    except OSError as exc:
        raise OutputWriteError(f"cannot write {dst}: {exc.strerror or exc}") from exc


def parse_size(value: str) -> int:
    # base 0 takes 0x8000 but refuses leading zeros, so 032768 goes through base 10
    base = 10 if value.isdigit() else 0
    try:
        size = int(value, base)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid program size: {value!r}") from None
    if size <= 0:
        raise argparse.ArgumentTypeError(f"program size must be positive: {value!r}")
    return size


def parse_fill(value: str) -> int:
    try:
        fill = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid fill byte: {value!r}") from None
    if not 0 <= fill <= 0xFF:
        raise argparse.ArgumentTypeError(f"fill byte out of range: {value!r}")
    return fill


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="makefirmware",
        description="Convert an Intel HEX file into a fixed-size PETdisk firmware image.",
    )
    parser.add_argument("hex", type=Path, help="Input .hex file")
    parser.add_argument("bin", type=Path, help="Output .bin file")
    parser.add_argument("size", type=parse_size, help="Exact output size in bytes, e.g. 28672 or 0x7000")
    parser.add_argument("--fill", type=parse_fill, default=FILL_BYTE, help="Fill byte for gaps, default 0xFF")
    parser.add_argument("--strict", action="store_true", help="Reject records with non-hex or missing characters")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print per-record diagnostics")
    args = parser.parse_args(argv)

    try:
        result = convert_file(args.hex, args.bin, args.size, fill=args.fill, strict=args.strict, verbose=args.verbose)
    except FirmwareError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(
        f"OK: wrote {result.total_bytes} bytes to {args.bin} "
        f"({result.data_bytes} from records, {result.fill_bytes} fill)"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
