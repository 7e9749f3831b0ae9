# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for restore_clipped_reads testing.

This module provides shared fixtures for building small unaligned and aligned
BAM files with pysam, plus helpers for constructing in-memory records.
"""

import array
import sys
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the module we're testing
from restore_clipped_reads import AuxType, TagValue, UnalignedRead, encode_aux_block

REFERENCE_LENGTH = 100

# (tag, value, value_type) as accepted by AlignedSegment.set_tag
TagSpec = tuple[str, Any, str | None]


def create_sam_header() -> dict[str, Any]:
    """Minimal header for aligned test files."""
    return {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": "test_reference", "LN": REFERENCE_LENGTH}],
        "PG": [{"ID": "test", "PN": "restore_clipped_reads_test", "VN": "0.1.0"}],
    }


def create_unaligned_header() -> dict[str, Any]:
    """Header of an unaligned (basecaller-style) file: no @SQ lines."""
    return {"HD": {"VN": "1.6", "SO": "unknown"}}


def make_segment(  # noqa: PLR0913
    header: pysam.AlignmentHeader,
    name: str,
    seq: str,
    *,
    cigar: list[tuple[int, int]] | None = None,
    reference_start: int = 0,
    is_reverse: bool = False,
    qualities: list[int] | None = None,
    tags: Iterable[TagSpec] = (),
) -> pysam.AlignedSegment:
    """Build a record; mapped when `cigar` is given, unmapped otherwise."""
    read = pysam.AlignedSegment(header)
    read.query_name = name
    read.query_sequence = seq
    read.query_qualities = qualities if qualities is not None else [30] * len(seq)
    if cigar is None:
        read.flag = 4
        read.reference_id = -1
        read.reference_start = -1
    else:
        read.flag = 16 if is_reverse else 0
        read.reference_id = 0
        read.reference_start = reference_start
        read.mapping_quality = 60
        read.cigartuples = cigar
    for tag, value, value_type in tags:
        read.set_tag(tag, value, value_type=value_type)
    return read


def write_bam(path: Path, header: dict[str, Any], records: list[dict[str, Any]]) -> Path:
    """Write `records` (keyword arguments for make_segment) to a BAM file."""
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam_file:
        for record in records:
            bam_file.write(make_segment(bam_file.header, **record))
    return path


def read_all(path: Path) -> list[pysam.AlignedSegment]:
    with pysam.AlignmentFile(str(path), "rb", check_sq=False) as bam_file:
        return list(bam_file)


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def aligned_header() -> pysam.AlignmentHeader:
    return pysam.AlignmentHeader.from_dict(create_sam_header())


@pytest.fixture
def unaligned_records() -> list[dict[str, Any]]:
    """
    Source reads:
      R1: full 8-base read with ONT-style tags absent from the aligner output
      R3: read whose qs tag conflicts with the aligned record's qs tag
    """
    return [
        {
            "name": "R1",
            "seq": "ACGTACGT",
            "qualities": [10, 11, 12, 13, 14, 15, 16, 17],
            "tags": [
                ("mv", array.array("B", [1, 2, 3]), None),
                ("qs", 14, "C"),
                ("ch", 1203, "S"),
                ("du", 0.5, "f"),
                ("RG", "run1", "Z"),
            ],
        },
        {
            "name": "R3",
            "seq": "TTTTGGGG",
            "tags": [("qs", 9, "C"), ("ts", -3, "c")],
        },
    ]


@pytest.fixture
def aligned_records() -> list[dict[str, Any]]:
    """
    Aligner output:
      R1: first two bases hard clipped (2H6M), all source tags dropped
      R2: not present in the unaligned file
      R3: no clipping, carries its own qs tag
    """
    return [
        {
            "name": "R1",
            "seq": "GTACGT",
            "cigar": [(5, 2), (0, 6)],
            "reference_start": 10,
            "qualities": [12, 13, 14, 15, 16, 17],
        },
        {
            "name": "R2",
            "seq": "CCCCAAAA",
            "cigar": [(0, 8)],
            "reference_start": 20,
            "tags": [("NM", 1, "i"), ("XB", array.array("b", [-1, 0, 1]), None)],
        },
        {
            "name": "R3",
            "seq": "TTTTGGGG",
            "cigar": [(0, 8)],
            "reference_start": 30,
            "tags": [("qs", 20, "C")],
        },
    ]


@pytest.fixture
def unaligned_bam(temp_dir: Path, unaligned_records: list[dict[str, Any]]) -> Path:
    """Create the unaligned source BAM."""
    return write_bam(temp_dir / "unaligned.bam", create_unaligned_header(), unaligned_records)


@pytest.fixture
def aligned_bam(temp_dir: Path, aligned_records: list[dict[str, Any]]) -> Path:
    """Create an aligned BAM to be restored."""
    aligned_dir = temp_dir / "aligned"
    aligned_dir.mkdir(exist_ok=True)
    return write_bam(aligned_dir / "sample.bam", create_sam_header(), aligned_records)


@pytest.fixture
def output_dir(temp_dir: Path) -> Path:
    return temp_dir / "restored"


@pytest.fixture
def r1_unaligned() -> UnalignedRead:
    """In-memory unaligned snapshot matching R1 in `unaligned_records`."""
    return UnalignedRead(
        sequence="ACGTACGT",
        qualities=bytes([10, 11, 12, 13, 14, 15, 16, 17]),
        aux=encode_aux_block(
            [
                ("mv", TagValue(AuxType.ARRAY_UINT8, (1, 2, 3))),
                ("qs", TagValue(AuxType.UINT8, 14)),
                ("RG", TagValue(AuxType.STRING, b"run1")),
            ],
        ),
    )


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
