#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
cvdlayout.py - Partition planning for cvd2img disk images

Turns an ordered list of partition specs into a DiskLayout:

    [0, reserved_prefix)        protective MBR + primary GPT (header, entries)
    [start_0, ...)              partition 0, start aligned to `alignment`
    ...
    [start_N, ...)              partition N
    [total - backup, total)     backup entry array + backup GPT header

Everything here is pure computation; no file is touched.
"""

import os
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

from cvderrors import ValidationError

SECTOR_SIZE = 512
KIB = 1024
MIB = 1024 * 1024

DEFAULT_ALIGNMENT = MIB
DEFAULT_RESERVED_PREFIX = MIB

# GPT geometry shared by the planner and the serializer
GPT_ENTRY_SIZE = 128
GPT_ENTRY_COUNT = 128  # Standard: 128 entries = 32 sectors
GPT_NAME_SIZE = 72     # 36 UTF-16LE code units

# Well-known partition type GUIDs
PARTITION_TYPES = {
    "linux": uuid.UUID("0FC63DAF-8483-4772-8E79-3D69D8477DE4"),
    "basic-data": uuid.UUID("EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"),
    "esp": uuid.UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B"),
}


# =====================================================================
# Sector / alignment arithmetic
# =====================================================================

def align_up(value: int, alignment: int) -> int:
    """Round value up to the next multiple of alignment."""
    if alignment <= 0:
        raise ValueError(f"alignment must be positive, got {alignment}")
    return (value + alignment - 1) // alignment * alignment


def is_aligned(value: int, alignment: int) -> bool:
    return value % alignment == 0


def sectors(size: int, sector_size: int = SECTOR_SIZE) -> int:
    """Number of sectors needed to hold size bytes."""
    return (size + sector_size - 1) // sector_size


def parse_size(text) -> int:
    """Parse a size such as '64M', '4096k', '512' or '0x200' into bytes."""
    if isinstance(text, int):
        return text
    s = text.strip().lower()
    multiplier = 1
    if s.endswith("m"):
        multiplier, s = MIB, s[:-1]
    elif s.endswith("k"):
        multiplier, s = KIB, s[:-1]
    elif s.endswith("g"):
        multiplier, s = 1024 * MIB, s[:-1]
    if s.startswith("0x"):
        value = int(s, 16)
    else:
        value = int(s, 10)
    return value * multiplier


def encode_name(name: str) -> bytes:
    """Encode a partition name for the GPT entry name field (UTF-16LE, unpadded)."""
    raw = name.encode("utf-16-le")
    if len(raw) > GPT_NAME_SIZE:
        raise ValidationError(f"partition name '{name}' needs {len(raw)} bytes, "
                              f"the GPT name field holds {GPT_NAME_SIZE}")
    return raw


def resolve_type_guid(type_id) -> uuid.UUID:
    if isinstance(type_id, uuid.UUID):
        return type_id
    try:
        return PARTITION_TYPES[type_id]
    except KeyError:
        raise ValidationError(f"unknown partition type '{type_id}'") from None


# =====================================================================
# Value types
# =====================================================================

@dataclass(frozen=True)
class PartitionSpec:
    """One partition to place: identity, type, table order, size and content.

    source is a path, a readable binary file object, or None for a
    zero-filled partition. The planner and assembler only ever read it.
    """
    name: str
    size: int
    ordinal: int
    type_id: object = "linux"
    source: object = field(default=None, compare=False)

    def __post_init__(self):
        if not self.name:
            raise ValidationError("partition name must not be empty")
        if self.size <= 0:
            raise ValidationError(f"partition '{self.name}' has size {self.size}, must be > 0")

    @classmethod
    def from_file(cls, name, path, ordinal, type_id="linux"):
        """Spec whose declared size is the current length of the file at path."""
        return cls(name=name, size=os.path.getsize(path), ordinal=ordinal,
                   type_id=type_id, source=path)

    @classmethod
    def blank(cls, name, size, ordinal, type_id="linux"):
        return cls(name=name, size=size, ordinal=ordinal, type_id=type_id, source=None)

    @property
    def reserved_size(self) -> int:
        """Declared size rounded up to whole sectors."""
        return align_up(self.size, SECTOR_SIZE)

    @property
    def type_guid(self) -> uuid.UUID:
        return resolve_type_guid(self.type_id)


@dataclass(frozen=True)
class PlacedPartition:
    spec: PartitionSpec
    start_offset: int
    end_offset: int

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def reserved_end(self) -> int:
        return self.start_offset + self.spec.reserved_size

    def first_lba(self, sector_size: int = SECTOR_SIZE) -> int:
        return self.start_offset // sector_size

    def last_lba(self, sector_size: int = SECTOR_SIZE) -> int:
        """Inclusive last sector of the reserved region."""
        return sectors(self.reserved_end, sector_size) - 1


@dataclass(frozen=True)
class DiskLayout:
    """Finalized partition placement for one output image."""
    partitions: Tuple[PlacedPartition, ...]
    total_size: int
    sector_size: int = SECTOR_SIZE
    alignment: int = DEFAULT_ALIGNMENT
    max_entries: int = GPT_ENTRY_COUNT

    def __post_init__(self):
        object.__setattr__(self, "partitions", tuple(self.partitions))
        if len(self.partitions) > self.max_entries:
            raise ValidationError(f"{len(self.partitions)} partitions exceed the "
                                  f"partition entry capacity of {self.max_entries}")
        if not is_aligned(self.total_size, self.sector_size):
            raise ValidationError(f"disk size {self.total_size} is not a multiple "
                                  f"of the {self.sector_size}-byte sector")
        names = set()
        cursor = self.primary_region_size
        for part in self.partitions:
            if part.name in names:
                raise ValidationError(f"duplicate partition name '{part.name}'")
            names.add(part.name)
            if not is_aligned(part.start_offset, self.alignment):
                raise ValidationError(f"partition '{part.name}' starts at {part.start_offset}, "
                                      f"not a multiple of {self.alignment}")
            if part.start_offset < cursor:
                raise ValidationError(f"partition '{part.name}' at {part.start_offset} "
                                      f"overlaps the region ending at {cursor}")
            if part.end_offset != part.start_offset + part.spec.size:
                raise ValidationError(f"partition '{part.name}' end offset does not match its size")
            cursor = part.reserved_end
        if self.total_size < cursor + self.backup_region_size:
            raise ValidationError(f"disk size {self.total_size} leaves no room for the "
                                  f"backup GPT after offset {cursor}")

    @property
    def total_sectors(self) -> int:
        return self.total_size // self.sector_size

    @property
    def entry_array_size(self) -> int:
        return align_up(self.max_entries * GPT_ENTRY_SIZE, self.sector_size)

    @property
    def entry_sectors(self) -> int:
        return self.entry_array_size // self.sector_size

    @property
    def primary_region_size(self) -> int:
        """Protective MBR + primary header + primary entry array."""
        return 2 * self.sector_size + self.entry_array_size

    @property
    def backup_region_size(self) -> int:
        return self.entry_array_size + self.sector_size

    @property
    def first_usable_lba(self) -> int:
        return 2 + self.entry_sectors

    @property
    def last_usable_lba(self) -> int:
        return self.total_sectors - 1 - self.entry_sectors - 1

    def describe(self):
        """Human readable summary lines, one per partition."""
        lines = []
        for i, part in enumerate(self.partitions):
            first = part.first_lba(self.sector_size)
            last = part.last_lba(self.sector_size)
            kib = (last - first + 1) * self.sector_size // 1024
            lines.append(f"partition {i + 1}: '{part.name}' LBA {first}-{last} ({kib} KiB)")
        return lines


# =====================================================================
# Planner
# =====================================================================

def backup_region_size(max_entries: int = GPT_ENTRY_COUNT, sector_size: int = SECTOR_SIZE) -> int:
    return align_up(max_entries * GPT_ENTRY_SIZE, sector_size) + sector_size


def plan(specs: Sequence[PartitionSpec], alignment: int = DEFAULT_ALIGNMENT,
         reserve_backup: bool = True, *, reserved_prefix: int = DEFAULT_RESERVED_PREFIX,
         allow_empty: bool = False, max_entries: int = GPT_ENTRY_COUNT,
         sector_size: int = SECTOR_SIZE) -> DiskLayout:
    """Place specs on a disk in ordinal order.

    With reserve_backup the backup GPT gets its own region after the last
    aligned partition; without it the backup is placed in the tail alignment
    slack so the disk size stays a multiple of alignment.
    """
    specs = list(specs)
    if not specs and not allow_empty:
        raise ValidationError("no partitions given")
    if len(specs) > max_entries:
        raise ValidationError(f"{len(specs)} partitions exceed the partition entry "
                              f"capacity of {max_entries}")
    if alignment <= 0 or alignment % sector_size != 0:
        raise ValidationError(f"alignment {alignment} is not a positive multiple "
                              f"of the {sector_size}-byte sector")

    primary_region = 2 * sector_size + align_up(max_entries * GPT_ENTRY_SIZE, sector_size)
    if reserved_prefix < primary_region or reserved_prefix % sector_size != 0:
        raise ValidationError(f"reserved prefix {reserved_prefix} cannot hold the "
                              f"primary GPT ({primary_region} bytes)")

    seen_names = set()
    seen_ordinals = set()
    for spec in specs:
        if spec.name in seen_names:
            raise ValidationError(f"duplicate partition name '{spec.name}'")
        if spec.ordinal in seen_ordinals:
            raise ValidationError(f"duplicate ordinal {spec.ordinal} (partition '{spec.name}')")
        seen_names.add(spec.name)
        seen_ordinals.add(spec.ordinal)
        encode_name(spec.name)
        resolve_type_guid(spec.type_id)

    placed = []
    cursor = reserved_prefix
    for spec in sorted(specs, key=lambda s: s.ordinal):
        start = align_up(cursor, alignment)
        placed.append(PlacedPartition(spec, start, start + spec.size))
        cursor = start + spec.reserved_size

    backup = backup_region_size(max_entries, sector_size)
    if reserve_backup:
        total_size = align_up(cursor, alignment) + backup
    else:
        total_size = align_up(cursor + backup, alignment)

    return DiskLayout(tuple(placed), total_size, sector_size=sector_size,
                      alignment=alignment, max_entries=max_entries)


def find_partition(layout: DiskLayout, name: str) -> Optional[PlacedPartition]:
    for part in layout.partitions:
        if part.name == name:
            return part
    return None
