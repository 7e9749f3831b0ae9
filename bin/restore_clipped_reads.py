#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Restore clipped bases and auxiliary tags on aligned reads.

Aligners may hard clip read ends (the bases are dropped from the record) and
may drop auxiliary tags that were present on the basecaller's unaligned BAM.
This tool indexes the unaligned BAM once, then rewrites each aligned file so
every read found in the index carries its full sequence/qualities again, with
hard clips (H) turned into soft clips (S) and missing tags filled in from the
unaligned record. Reads absent from the index are passed through untouched.
"""

from __future__ import annotations

import argparse
import array
import copy
import string
import struct
import sys
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, NamedTuple, Union

import polars as pl
import pysam
from loguru import logger
from pydantic import Field, field_validator
from pydantic.dataclasses import dataclass as validated_dataclass

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

pysam.set_verbosity(0)  # make htslib quiet about missing indexes we never use

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
SOFT_CLIP = 4
HARD_CLIP = 5
QRY_CONSUME = {0, 1, 4, 7, 8}

# Emit a progress debug line after this many records
DEBUG_EVERY: int = 100_000

# Appended to the input file stem to name each output file
DEFAULT_SUFFIX = "_converted"

# Element code -> (struct format, array.array typecode, inclusive integer range)
_ELEMENT_LAYOUT: dict[str, tuple[str, str, tuple[int, int] | None]] = {
    "c": ("b", "b", (-(1 << 7), (1 << 7) - 1)),
    "C": ("B", "B", (0, (1 << 8) - 1)),
    "s": ("h", "h", (-(1 << 15), (1 << 15) - 1)),
    "S": ("H", "H", (0, (1 << 16) - 1)),
    "i": ("i", "i", (-(1 << 31), (1 << 31) - 1)),
    "I": ("I", "I", (0, (1 << 32) - 1)),
    "f": ("f", "f", None),
}

# array.array typecode (as returned by pysam for B tags) -> BAM element code
_ARRAY_TYPECODES: dict[str, str] = {
    typecode: code for code, (_, typecode, _) in _ELEMENT_LAYOUT.items()
}

_COMPLEMENT = str.maketrans("ACGTUNRYKMBVDHacgtunrykmbvdh", "TGCAANYRMKVBHDtgcaanyrmkvbhd")

# Every legal SAM tag identifier, [A-Za-z][A-Za-z0-9]
_TAG_IDS = tuple(a + b for a in string.ascii_letters for b in string.ascii_letters + string.digits)

ScalarValue = Union[int, float, bytes]
TagPayload = Union[ScalarValue, tuple[Union[int, float], ...]]


# -------------------------------- ERRORS ---------------------------------- #


class RestoreError(Exception):
    """Base class for errors raised by this tool."""


class TagValueError(RestoreError, ValueError):
    """An auxiliary value that cannot be represented at its declared type."""


class UnsupportedTagTypeError(TagValueError):
    """An auxiliary field whose type code is outside the BAM aux type set."""


class RunFailedError(RestoreError):
    """One or more aligned files could not be processed."""

    def __init__(self, failed: Sequence[Path]) -> None:
        self.failed = list(failed)
        names = ", ".join(str(path) for path in self.failed)
        super().__init__(f"{len(self.failed)} file(s) failed: {names}")


# ------------------------------- TAG VALUES -------------------------------- #


class AuxType(Enum):
    """
    Closed set of BAM auxiliary encodings, one member per concrete width.

    Integer widths and signedness are never merged: a field read as `C` is
    written back as `C`, and `B:c` stays distinct from `B:C`.
    """

    CHAR = "A"
    INT8 = "c"
    UINT8 = "C"
    INT16 = "s"
    UINT16 = "S"
    INT32 = "i"
    UINT32 = "I"
    FLOAT = "f"
    STRING = "Z"
    HEX = "H"
    ARRAY_INT8 = "Bc"
    ARRAY_UINT8 = "BC"
    ARRAY_INT16 = "Bs"
    ARRAY_UINT16 = "BS"
    ARRAY_INT32 = "Bi"
    ARRAY_UINT32 = "BI"
    ARRAY_FLOAT = "Bf"

    @classmethod
    def from_code(cls, code: str) -> AuxType:
        """Look up a member by type code ("C", "Z", "BC", ...)."""
        try:
            return cls(code)
        except ValueError:
            msg = f"Unsupported aux type code {code!r}"
            raise UnsupportedTagTypeError(msg) from None

    @property
    def is_array(self) -> bool:
        return len(self.value) == 2  # noqa: PLR2004

    @property
    def is_text(self) -> bool:
        return self in (AuxType.CHAR, AuxType.STRING, AuxType.HEX)

    @property
    def element_code(self) -> str:
        """Code of one element: the scalar code, or the array subtype."""
        return self.value[-1]

    @property
    def struct_format(self) -> str:
        """Little-endian struct format of a single numeric element."""
        assert not self.is_text, f"{self.name} has no fixed-width element"
        return "<" + _ELEMENT_LAYOUT[self.element_code][0]

    @property
    def width(self) -> int | None:
        """Bytes per element, or None for variable-length strings."""
        if self is AuxType.CHAR:
            return 1
        if self.is_text:
            return None
        return struct.calcsize(self.struct_format)

    @property
    def array_typecode(self) -> str:
        assert self.is_array, f"{self.name} is not an array type"
        return _ELEMENT_LAYOUT[self.element_code][1]

    @property
    def bounds(self) -> tuple[int, int] | None:
        """Inclusive value range for integer element types."""
        if self.is_text:
            return None
        return _ELEMENT_LAYOUT[self.element_code][2]


def _check_element(aux_type: AuxType, item: object) -> None:
    if aux_type.element_code == "f":
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            msg = f"{aux_type.name} element must be a number, got {item!r}"
            raise TagValueError(msg)
        return
    if isinstance(item, bool) or not isinstance(item, int):
        msg = f"{aux_type.name} element must be an int, got {item!r}"
        raise TagValueError(msg)
    low, high = aux_type.bounds
    if not low <= item <= high:
        msg = f"{item} does not fit {aux_type.name} (range {low}..{high})"
        raise TagValueError(msg)


@dataclass(frozen=True, slots=True)
class TagValue:
    """
    One auxiliary field value together with its exact encoded type.

    Values by type:
      - CHAR: a single byte
      - STRING / HEX: raw bytes, without the NUL terminator
      - integer / FLOAT scalars: int / float
      - arrays: a tuple of elements of the array's element type
    """

    aux_type: AuxType
    value: TagPayload

    def __post_init__(self) -> None:
        aux_type, value = self.aux_type, self.value
        if aux_type.is_array:
            if not isinstance(value, tuple):
                msg = f"{aux_type.name} value must be a tuple, got {type(value).__name__}"
                raise TagValueError(msg)
            for item in value:
                _check_element(aux_type, item)
        elif aux_type.is_text:
            if not isinstance(value, bytes):
                msg = f"{aux_type.name} value must be bytes, got {type(value).__name__}"
                raise TagValueError(msg)
            if aux_type is AuxType.CHAR and len(value) != 1:
                msg = f"CHAR value must be exactly one byte, got {value!r}"
                raise TagValueError(msg)
            if b"\0" in value:
                msg = f"{aux_type.name} value may not contain NUL bytes"
                raise TagValueError(msg)
            if aux_type is AuxType.HEX and (
                len(value) % 2 or value.translate(None, b"0123456789abcdefABCDEF")
            ):
                msg = f"HEX value must be an even number of hex digits, got {value!r}"
                raise TagValueError(msg)
        else:
            _check_element(aux_type, value)

    # -- pysam adapter --

    @classmethod
    def from_pysam(cls, value: object, value_type: str) -> TagValue:
        """
        Build from one `get_tags(with_value_type=True)` triple.

        pysam reports every array as type "B" and carries the element width
        in the `array.array` typecode, so that is where the subtype comes from.
        """
        if value_type == "B" or isinstance(value, array.array):
            typecode = getattr(value, "typecode", None)
            code = _ARRAY_TYPECODES.get(typecode)
            if code is None:
                msg = f"Unsupported array element typecode {typecode!r}"
                raise UnsupportedTagTypeError(msg)
            return cls(AuxType.from_code("B" + code), tuple(value))
        aux_type = AuxType.from_code(value_type)
        if aux_type.is_text:
            if isinstance(value, str):
                value = value.encode("utf-8", errors="surrogateescape")
            else:
                value = bytes(value)
        elif aux_type is AuxType.UINT32 and isinstance(value, int):
            # pysam hands back I fields through a signed 32-bit read
            value &= 0xFFFFFFFF
        return cls(aux_type, value)

    def to_pysam(self) -> tuple[object, str | None]:
        """
        Return `(value, value_type)` for `AlignedSegment.set_tag`.

        Arrays go out with no value_type: pysam takes the B subtype from
        the `array.array` typecode. Text goes out as raw bytes.
        """
        aux_type = self.aux_type
        if aux_type.is_array:
            return array.array(aux_type.array_typecode, self.value), None
        return self.value, aux_type.value


# --------------------------- BINARY AUX CODEC ------------------------------ #


def _tag_key(tag: str) -> bytes:
    key = tag.encode("ascii", errors="replace")
    if len(key) != 2 or not tag.isascii():  # noqa: PLR2004
        msg = f"Tag identifier must be two ASCII characters, got {tag!r}"
        raise TagValueError(msg)
    return key


def encode_field(tag: str, tag_value: TagValue) -> bytes:
    """Encode one field in BAM aux layout: tag, type code, little-endian payload."""
    aux_type = tag_value.aux_type
    head = _tag_key(tag) + aux_type.value.encode("ascii")
    if aux_type.is_array:
        items = tag_value.value
        body = struct.pack(
            f"<I{len(items)}{aux_type.struct_format[1:]}", len(items), *items
        )
        return head + body
    if aux_type is AuxType.CHAR:
        return head + tag_value.value
    if aux_type.is_text:
        return head + tag_value.value + b"\0"
    return head + struct.pack(aux_type.struct_format, tag_value.value)


def decode_field(buf: bytes, offset: int = 0) -> tuple[str, TagValue, int]:
    """
    Decode the field starting at `offset`.

    Returns (tag, value, offset of the next field). Raises
    `UnsupportedTagTypeError` for a type code outside the BAM set and
    `TagValueError` for a truncated field.
    """
    if len(buf) - offset < 3:  # noqa: PLR2004
        msg = f"Truncated aux field at offset {offset}"
        raise TagValueError(msg)
    try:
        tag = buf[offset : offset + 2].decode("ascii")
    except UnicodeDecodeError as err:
        msg = f"Non-ASCII tag identifier at offset {offset}"
        raise TagValueError(msg) from err
    code = chr(buf[offset + 2])
    pos = offset + 3

    try:
        if code == "B":
            aux_type = AuxType.from_code("B" + chr(buf[pos]))
            (count,) = struct.unpack_from("<I", buf, pos + 1)
            fmt = f"<{count}{aux_type.struct_format[1:]}"
            items = struct.unpack_from(fmt, buf, pos + 5)
            return tag, TagValue(aux_type, items), pos + 5 + struct.calcsize(fmt)
        aux_type = AuxType.from_code(code)
        if aux_type is AuxType.CHAR:
            if pos >= len(buf):
                raise IndexError(pos)
            return tag, TagValue(aux_type, buf[pos : pos + 1]), pos + 1
        if aux_type.is_text:
            end = buf.find(b"\0", pos)
            if end < 0:
                msg = f"Unterminated {aux_type.name} field '{tag}'"
                raise TagValueError(msg)
            return tag, TagValue(aux_type, bytes(buf[pos:end])), end + 1
        (value,) = struct.unpack_from(aux_type.struct_format, buf, pos)
        return tag, TagValue(aux_type, value), pos + aux_type.width
    except (struct.error, IndexError) as err:
        msg = f"Truncated aux field '{tag}' at offset {offset}"
        raise TagValueError(msg) from err


def encode_aux_block(tags: Iterable[tuple[str, TagValue]]) -> bytes:
    """Concatenate encoded fields into one aux block."""
    return b"".join(encode_field(tag, value) for tag, value in tags)


def iter_aux_block(block: bytes) -> Iterator[tuple[str, TagValue]]:
    """
    Yield (tag, value) for every field of an aux block, in stored order.

    An unsupported type code ends the block with an error: its payload
    length is unknown, so later fields cannot be located.
    """
    offset = 0
    while offset < len(block):
        tag, value, offset = decode_field(block, offset)
        yield tag, value


def decode_segment_tags(
    read: pysam.AlignedSegment,
    on_skip: Callable[[str, str], None],
) -> list[tuple[str, TagValue]]:
    """
    Decode every aux field of `read`, keeping duplicates and order.

    Fields outside the supported type set are reported through
    `on_skip(tag, reason)` and left out; the rest of the record is kept.
    """
    try:
        raw = read.get_tags(with_value_type=True)
    except ValueError as err:
        # one bad field (e.g. a non-UTF-8 Z) fails pysam's whole-block decode
        logger.debug(f"Falling back to per-field tag lookup for '{read.query_name}': {err}")
        return _decode_tags_by_id(read, on_skip)

    decoded: list[tuple[str, TagValue]] = []
    for tag, value, value_type in raw:
        try:
            decoded.append((tag, TagValue.from_pysam(value, value_type)))
        except TagValueError as err:
            on_skip(tag, str(err))
    return decoded


def _decode_tags_by_id(
    read: pysam.AlignedSegment,
    on_skip: Callable[[str, str], None],
) -> list[tuple[str, TagValue]]:
    """
    Look fields up one identifier at a time, so only the bad ones are lost.

    Returns fields in identifier order, first occurrence only.
    """
    decoded: list[tuple[str, TagValue]] = []
    for tag in _TAG_IDS:
        if not read.has_tag(tag):
            continue
        try:
            value, value_type = read.get_tag(tag, with_value_type=True)
            decoded.append((tag, TagValue.from_pysam(value, value_type)))
        except ValueError as err:
            on_skip(tag, str(err))
    return decoded


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(op, ln)

    @staticmethod
    def to_tuple(run: CigarOp) -> tuple[int, int]:
        """Convert a CigarOp back to a raw (op, len) tuple."""
        return (run.op, run.length)


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and inspection."""

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]] | None) -> Cigar | None:
        """
        Convert pysam's list[(op, len)] to a Cigar. Returns None if input is None.
        """
        if cig_raw is None:
            return None
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [CigarOp.to_tuple(run) for run in self]

    def has_hard_clips(self) -> bool:
        return any(run.op == HARD_CLIP for run in self)

    def query_length(self) -> int:
        """Number of query bases the operations consume (M, I, S, =, X)."""
        return sum(run.length for run in self if run.op in QRY_CONSUME)


def convert_cigar(cig: Iterable[tuple[int, int]] | None) -> Cigar | None:
    """
    Reclassify every hard clip as a soft clip of the same length.

    Every other run passes through unchanged and in order, so the number of
    runs and all lengths are preserved. Applying it twice is the same as
    applying it once.
    """
    if cig is None:
        return None
    return Cigar(
        CigarOp(SOFT_CLIP if op == HARD_CLIP else op, length) for op, length in cig
    )


def reverse_complement(seq: str) -> str:
    return seq.translate(_COMPLEMENT)[::-1]


# ------------------------------ READ INDEX --------------------------------- #


@dataclass(frozen=True, slots=True)
class UnalignedRead:
    """
    Snapshot of one unaligned read.

    Tags are held as a packed BAM aux block so that large indexes stay
    compact; they are decoded on access.
    """

    sequence: str
    qualities: bytes  # Phred values, empty when the source has none
    aux: bytes = b""

    def __post_init__(self) -> None:
        assert not self.qualities or len(self.qualities) == len(self.sequence), (
            f"Sequence/quality length mismatch: seq={len(self.sequence)}, "
            f"qual={len(self.qualities)}"
        )

    @classmethod
    def from_segment(
        cls,
        read: pysam.AlignedSegment,
        on_skip: Callable[[str, str], None],
    ) -> UnalignedRead:
        qual = read.query_qualities
        return cls(
            sequence=read.query_sequence or "",
            qualities=bytes(qual) if qual is not None else b"",
            aux=encode_aux_block(decode_segment_tags(read, on_skip)),
        )

    @property
    def tags(self) -> list[tuple[str, TagValue]]:
        return list(iter_aux_block(self.aux))

    @property
    def tag_ids(self) -> list[str]:
        return [tag for tag, _ in iter_aux_block(self.aux)]

    def get_tag(self, tag: str) -> TagValue | None:
        """Value of the first field named `tag`, or None."""
        for name, value in iter_aux_block(self.aux):
            if name == tag:
                return value
        return None


class ReadIndex(Mapping[str, UnalignedRead]):
    """
    Read-only lookup from read name to its unaligned snapshot.

    The index owns its entries; it offers no way to add, remove or replace
    one, so it can be shared freely between per-file workers.
    """

    def __init__(
        self,
        reads: dict[str, UnalignedRead],
        skipped_tags: int = 0,
        duplicates: int = 0,
    ) -> None:
        self._reads = MappingProxyType(reads)
        self.skipped_tags = skipped_tags
        self.duplicates = duplicates

    def __getitem__(self, name: str) -> UnalignedRead:
        return self._reads[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._reads)

    def __len__(self) -> int:
        return len(self._reads)

    def __repr__(self) -> str:
        return f"ReadIndex(reads={len(self)}, skipped_tags={self.skipped_tags})"


def create_read_index(
    path: str | Path,
    reference: str | None = None,
    io_threads: int = 1,
) -> ReadIndex:
    """
    Read every record of the unaligned file into a ReadIndex.

    Any error from the reader aborts the build: a partial index would
    silently leave later reads unrestored. Duplicate names keep the last
    record seen. Individual unsupported tag fields are skipped and counted.
    """
    logger.info(f"Creating index from unaligned file: {path}")
    reads: dict[str, UnalignedRead] = {}
    skipped = 0
    duplicates = 0

    def on_skip(tag: str, reason: str) -> None:
        nonlocal skipped
        skipped += 1
        logger.warning(f"Skipping tag '{tag}' on unaligned read '{name}': {reason}")

    with open_alignment(
        str(path), write=False, reference=reference, io_threads=io_threads
    ) as source:
        for seen, read in enumerate(source, start=1):
            name = read.query_name
            if name in reads:
                duplicates += 1
                logger.debug(f"Duplicate unaligned read '{name}'; keeping the later record")
            reads[name] = UnalignedRead.from_segment(read, on_skip)
            if seen % DEBUG_EVERY == 0:
                logger.debug(f"Indexed {seen} reads...")

    if duplicates:
        logger.warning(f"{duplicates} duplicate read name(s) in {path}; last record kept")
    if skipped:
        logger.warning(f"{skipped} unsupported tag field(s) skipped while indexing {path}")
    logger.info(f"Indexed {len(reads)} reads")
    return ReadIndex(reads, skipped_tags=skipped, duplicates=duplicates)


# ------------------------------- RUN STATS --------------------------------- #


@dataclass
class RunStats:
    """Counters for one aligned file; add instances to total a run."""

    reads_processed: int = 0
    reads_modified: int = 0
    reads_missing: int = 0
    tags_skipped: int = 0
    length_mismatches: int = 0

    @property
    def reads_found(self) -> int:
        return self.reads_processed - self.reads_missing

    def __add__(self, other: RunStats) -> RunStats:
        if not isinstance(other, RunStats):
            return NotImplemented
        return RunStats(
            **{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)}
        )

    def check(self) -> None:
        """Assert the relations that hold for every finished file or run."""
        assert all(getattr(self, f.name) >= 0 for f in fields(self)), (
            f"Counters cannot be negative: {self}"
        )
        assert self.reads_modified <= self.reads_found, (
            f"Modified reads exceed found reads: {self}"
        )
        assert self.reads_missing <= self.reads_processed, (
            f"Missing reads exceed processed reads: {self}"
        )


def write_stats_table(per_file: Mapping[Path, RunStats], path: Path) -> None:
    """Write per-file counters plus a TOTAL row as TSV."""
    total = sum(per_file.values(), RunStats())
    rows = [{"file": str(name), **asdict(stats)} for name, stats in per_file.items()]
    rows.append({"file": "TOTAL", **asdict(total)})
    table = pl.DataFrame(rows)
    table.write_csv(path, separator="\t")
    logger.info(f"Saved stats for {len(per_file)} file(s) to {path}")


# ---------------------------- TRANSFER POLICY ------------------------------ #


@validated_dataclass(frozen=True)
class TransferPolicy:
    """
    Which unaligned-only tags are added to found reads.

    `tags=None` transfers every tag the unaligned read carries; otherwise
    only the listed identifiers. Identifiers that are not two ASCII
    characters are dropped with a warning.
    """

    tags: tuple[str, ...] | None = None
    orient_reverse: bool = False

    @field_validator("tags")
    @classmethod
    def drop_malformed_ids(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is None:
            return v
        kept = tuple(dict.fromkeys(t for t in v if len(t) == 2 and t.isascii()))  # noqa: PLR2004
        dropped = [t for t in v if t not in kept]
        if dropped:
            logger.warning(f"Ignoring tag identifiers that are not two characters: {dropped}")
        return kept

    def candidates(self, unaligned: UnalignedRead) -> Iterator[tuple[str, TagValue]]:
        """Unaligned fields eligible for transfer, first occurrence per tag."""
        if self.tags is None:
            seen: set[str] = set()
            for tag, value in unaligned.tags:
                if tag not in seen:
                    seen.add(tag)
                    yield tag, value
            return
        for tag in self.tags:
            value = unaligned.get_tag(tag)
            if value is not None:
                yield tag, value


# ------------------------------ CORE LOGIC --------------------------------- #


def _push_tag(
    out: pysam.AlignedSegment,
    tag: str,
    tag_value: TagValue,
    on_skip: Callable[[str, str], None],
) -> bool:
    try:
        value, value_type = tag_value.to_pysam()
        out.set_tag(tag, value, value_type=value_type, replace=False)
    except ValueError as err:
        on_skip(tag, str(err))
        return False
    return True


def merge_record(
    aln: pysam.AlignedSegment,
    unaligned: UnalignedRead,
    policy: TransferPolicy,
    stats: RunStats,
) -> pysam.AlignedSegment:
    """
    Build the output record for a read found in the index.

    - Position, flags, mapping quality, mate fields and every aux field
      come from a copy of `aln`; its aux bytes are never re-encoded.
    - Hard clips become soft clips (the read then counts as modified);
      a CIGAR without hard clips is kept as is.
    - Sequence and qualities come from the unaligned read.
    - Unaligned fields chosen by `policy` are appended when `aln` does not
      already carry that identifier.

    `aln` itself is left untouched.
    """
    name = aln.query_name

    def on_skip(tag: str, reason: str) -> None:
        stats.tags_skipped += 1
        logger.warning(f"Skipping tag '{tag}' on aligned read '{name}': {reason}")

    out = copy.copy(aln)

    cig = Cigar.from_pysam(aln.cigartuples)
    if cig is not None and cig.has_hard_clips():
        new_cig = convert_cigar(cig)
        stats.reads_modified += 1
        logger.trace(f"Converted hard clips for '{name}': {cig.to_pysam()} -> {new_cig.to_pysam()}")
        out.cigartuples = new_cig.to_pysam()
    else:
        new_cig = cig

    seq, qual = unaligned.sequence, unaligned.qualities
    if policy.orient_reverse and aln.is_reverse:
        seq, qual = reverse_complement(seq), qual[::-1]
    # setting the sequence resets qualities, so order matters
    out.query_sequence = seq or None
    out.query_qualities = array.array("B", qual) if qual else None

    if new_cig and seq and new_cig.query_length() != len(seq):
        stats.length_mismatches += 1
        logger.warning(
            f"CIGAR/sequence length mismatch for '{name}': "
            f"cigar_query_len={new_cig.query_length()}, seq_len={len(seq)}",
        )

    added: set[str] = set()
    for tag, value in policy.candidates(unaligned):
        if tag in added or aln.has_tag(tag):
            continue
        if _push_tag(out, tag, value, on_skip):
            added.add(tag)

    return out


def process_stream(
    inp: pysam.AlignmentFile,
    outp: pysam.AlignmentFile,
    index: Mapping[str, UnalignedRead],
    policy: TransferPolicy,
) -> RunStats:
    """
    Stream input -> output in input order, restoring reads found in `index`.

    Reads missing from the index are written exactly as read and counted.
    """
    stats = RunStats()
    for aln in inp:
        stats.reads_processed += 1
        if stats.reads_processed % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: processed={stats.reads_processed}, "
                f"modified={stats.reads_modified}, missing={stats.reads_missing}",
            )

        unaligned = index.get(aln.query_name)
        if unaligned is None:
            stats.reads_missing += 1
            logger.trace(f"Read '{aln.query_name}' not in index; passing through")
            outp.write(aln)
            continue

        outp.write(merge_record(aln, unaligned, policy, stats))

    stats.check()
    return stats


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = "Output/input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
    io_threads: int = 1,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with correct mode. For CRAM, pass a reference filename.
    - If write=True and template_or_header is an AlignmentFile, we use 'template=...'
      to preserve header (lossless).
    - Otherwise, pass a header dict.
    - Reading never requires @SQ lines, since unaligned files carry none.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )

    mode = _io_mode_from_ext(path, write)

    kwargs: dict[str, object] = {"threads": max(1, io_threads)}
    if path.lower().endswith(".cram") and reference is None:
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    if path.lower().endswith(".cram") and reference is not None:
        kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        assert template_or_header is not None, (
            f"Writing to '{path}' requires template_or_header but got None"
        )

        if isinstance(template_or_header, pysam.AlignmentFile):
            return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
        if isinstance(template_or_header, dict):
            return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
        msg = f"Writing requires either a template AlignmentFile or a header dict, got {type(template_or_header)}"
        logger.error(msg)
        raise ValueError(msg)
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


def derive_output_path(
    input_path: Path,
    output_dir: Path,
    suffix: str = DEFAULT_SUFFIX,
) -> Path:
    """
    Name the output for `input_path`: `<stem><suffix><ext>` under `output_dir`.

    `reads.bam` -> `<output_dir>/reads_converted.bam`.
    """
    name = input_path.name
    try:
        name.encode("utf-8")
    except UnicodeEncodeError as err:
        msg = f"Invalid UTF-8 in filename: {input_path!r}"
        raise ValueError(msg) from err
    if not name:
        msg = f"Invalid input filename: {input_path!r}"
        raise ValueError(msg)
    _io_mode_from_ext(name, write=False)

    output_path = output_dir / f"{input_path.stem}{suffix}{input_path.suffix}"
    if output_path.resolve() == input_path.resolve():
        msg = f"Output path would overwrite input: {input_path}"
        raise ValueError(msg)
    return output_path


def process_alignment_file(  # noqa: PLR0913
    input_path: Path,
    index: Mapping[str, UnalignedRead],
    output_dir: Path,
    policy: TransferPolicy,
    suffix: str = DEFAULT_SUFFIX,
    reference: str | None = None,
    io_threads: int = 1,
) -> RunStats:
    """Restore one aligned file into `output_dir`; returns its counters."""
    output_path = derive_output_path(input_path, output_dir, suffix)
    logger.info(f"Processing {input_path} -> {output_path}")

    input_alignment = open_alignment(
        str(input_path), write=False, reference=reference, io_threads=io_threads
    )
    try:
        output_alignment = open_alignment(
            str(output_path),
            write=True,
            template_or_header=input_alignment,
            reference=reference,
            io_threads=io_threads,
        )
    except (OSError, ValueError):
        input_alignment.close()
        raise

    try:
        stats = process_stream(input_alignment, output_alignment, index, policy)
    finally:
        output_alignment.close()
        input_alignment.close()

    logger.info(
        f"File stats for {input_path.name}: processed={stats.reads_processed}, "
        f"modified={stats.reads_modified}, missing={stats.reads_missing}, "
        f"tags_skipped={stats.tags_skipped}",
    )
    return stats


def process_alignment_files(  # noqa: PLR0913
    inputs: Iterable[Path],
    index: Mapping[str, UnalignedRead],
    output_dir: Path,
    policy: TransferPolicy,
    workers: int = 1,
    suffix: str = DEFAULT_SUFFIX,
    reference: str | None = None,
    io_threads: int = 1,
) -> dict[Path, RunStats]:
    """
    Run `process_alignment_file` once per input, up to `workers` at a time.

    Each task owns its reader, writer and counters; the index is only read.
    Results come back in input order. If any file fails, the others still
    finish (and are kept) and `RunFailedError` is raised at the end.
    """
    paths = list(dict.fromkeys(Path(p) for p in inputs))
    targets: dict[Path, Path] = {}
    for path in paths:
        target = derive_output_path(path, output_dir, suffix)
        if target in targets.values():
            msg = f"Two inputs would write the same output file: {target}"
            raise ValueError(msg)
        targets[path] = target

    results: dict[Path, RunStats] = {}
    failed: list[Path] = []
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {
            path: executor.submit(
                process_alignment_file,
                path,
                index,
                output_dir,
                policy,
                suffix,
                reference,
                io_threads,
            )
            for path in paths
        }
        for path, future in futures.items():
            try:
                results[path] = future.result()
            except (OSError, ValueError, AssertionError) as err:
                logger.error(f"Failed to process {path}: {err}")
                failed.append(path)

    if failed:
        raise RunFailedError(failed)
    return results


# --------------------------------- CLI ------------------------------------- #


@validated_dataclass(frozen=True)
class RunSettings:
    """Validated command-line settings."""

    unaligned: Path
    aligned: list[Path] = Field(min_length=1)
    output_dir: Path = Path()
    suffix: str = DEFAULT_SUFFIX
    reference: str | None = None
    threads: int = Field(default=1, ge=1)
    io_threads: int = Field(default=1, ge=1)
    stats_tsv: Path | None = None

    @field_validator("unaligned")
    @classmethod
    def unaligned_exists(cls, v: Path) -> Path:
        if not v.is_file():
            msg = f"Unaligned file does not exist: {v}"
            raise ValueError(msg)
        return v


def _split_tag_list(values: Sequence[str] | None) -> tuple[str, ...] | None:
    """Flatten repeated, comma-separated --tags values."""
    if values is None:
        return None
    return tuple(t.strip() for value in values for t in value.split(",") if t.strip())


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Restore aligned reads from their unaligned source:\n"
            "  - hard clips (H) become soft clips (S)\n"
            "  - sequence and qualities come from the unaligned read\n"
            "  - tags missing on the aligned side are copied over, with their original type\n"
            "Reads absent from the unaligned file are written unchanged."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument(
        "--unaligned",
        required=True,
        help="Unaligned SAM/BAM/CRAM holding full sequences and tags",
    )
    p.add_argument(
        "--aligned",
        required=True,
        nargs="+",
        help="One or more aligned SAM/BAM/CRAM files to restore",
    )
    p.add_argument(
        "--output-dir",
        required=True,
        help="Directory for restored files (created if missing)",
    )
    p.add_argument(
        "--suffix",
        default=DEFAULT_SUFFIX,
        help=f"Appended to each input file stem (default: {DEFAULT_SUFFIX})",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--stats-tsv",
        default=None,
        help="Optional TSV with per-file and total counters",
    )

    # Transfer policy
    transfer_group = p.add_argument_group("Tag Transfer")
    transfer_group.add_argument(
        "--tags",
        action="append",
        default=None,
        help=(
            "Comma-separated tag identifiers to copy from the unaligned read "
            "(repeatable). Default: every tag present on the unaligned read."
        ),
    )
    transfer_group.add_argument(
        "--orient-reverse",
        action="store_true",
        help="Reverse-complement restored sequence/qualities for reverse-strand records",
    )

    # Parallelism
    p.add_argument(
        "-t",
        "--threads",
        type=int,
        default=1,
        help="Number of aligned files processed in parallel",
    )
    p.add_argument(
        "--io-threads",
        type=int,
        default=1,
        help="htslib compression threads per open file",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting restore run.")

    try:
        settings = RunSettings(
            unaligned=Path(args.unaligned),
            aligned=[Path(p) for p in args.aligned],
            output_dir=Path(args.output_dir),
            suffix=args.suffix,
            reference=args.reference,
            threads=args.threads,
            io_threads=args.io_threads,
            stats_tsv=Path(args.stats_tsv) if args.stats_tsv else None,
        )
        policy = TransferPolicy(
            tags=_split_tag_list(args.tags),
            orient_reverse=args.orient_reverse,
        )
    except ValueError as e:
        logger.error(f"Invalid arguments: {e}")
        sys.exit(1)
    logger.debug(f"RunSettings: {settings}")
    logger.debug(f"TransferPolicy: {policy}")

    try:
        settings.output_dir.mkdir(parents=True, exist_ok=True)
        index = create_read_index(
            settings.unaligned,
            reference=settings.reference,
            io_threads=settings.io_threads,
        )
    except (OSError, ValueError) as e:
        logger.error(f"Could not build read index from {settings.unaligned}: {e}")
        sys.exit(1)

    try:
        per_file = process_alignment_files(
            settings.aligned,
            index,
            settings.output_dir,
            policy,
            workers=settings.threads,
            suffix=settings.suffix,
            reference=settings.reference,
            io_threads=settings.io_threads,
        )
    except (RunFailedError, ValueError) as e:
        logger.error(f"Restore run failed: {e}")
        sys.exit(1)

    total = sum(per_file.values(), RunStats())
    total.check()
    if settings.stats_tsv is not None:
        write_stats_table(per_file, settings.stats_tsv)

    logger.success(
        f"Processed: {total.reads_processed} | Modified: {total.reads_modified} | "
        f"Missing: {total.reads_missing} | Tags skipped: {total.tags_skipped}",
    )
    logger.info("Restore run complete.")


if __name__ == "__main__":
    main()
