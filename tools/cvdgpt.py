#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
cvdgpt.py - GPT (GUID Partition Table) serializer and reader

Produces the structural sectors of a GPT disk for a DiskLayout:
    LBA 0:              protective MBR
    LBA 1:              primary GPT header
    LBA 2..33:          primary partition entry array
    LBA N-33..N-2:      backup partition entry array
    LBA N-1:            backup GPT header

All fields are little-endian. Serialization is deterministic: the disk
GUID is supplied by the caller and partition GUIDs are derived from it.
"""

import struct
import uuid
import zlib
from dataclasses import dataclass
from typing import List

from cvderrors import ValidationError
from cvdlayout import GPT_ENTRY_SIZE, GPT_NAME_SIZE, DiskLayout, encode_name

GPT_SIGNATURE = b'EFI PART'
GPT_REVISION = 0x00010000
GPT_HEADER_SIZE = 92

MBR_PARTITION_OFFSET = 446
MBR_PROTECTIVE_TYPE = 0xEE
MBR_SIGNATURE = b'\x55\xAA'

# Header layout: signature, revision, header size, header crc, reserved,
# current lba, backup lba, first usable, last usable, disk guid,
# entries lba, entry count, entry size, entries crc
_HEADER_FORMAT = '<8sIIIIQQQQ16sQIII'
# Entry layout: type guid, unique guid, first lba, last lba, attributes, name
_ENTRY_FORMAT = '<16s16sQQQ72s'
_HEADER_CRC_OFFSET = 16

# Namespace for disk GUIDs derived from a seed string
DISK_GUID_NAMESPACE = uuid.UUID("6f1b3c52-2d0e-5a4e-9c1e-6376643269e7")


def guid_to_bytes(guid):
    """Convert UUID to GPT mixed-endian bytes (first 3 fields LE, rest BE)."""
    return guid.bytes_le


def disk_guid_from_seed(seed: str) -> uuid.UUID:
    """Stable disk GUID for a seed string."""
    return uuid.uuid5(DISK_GUID_NAMESPACE, seed)


def partition_guid(disk_guid: uuid.UUID, name: str) -> uuid.UUID:
    """Stable unique partition GUID derived from the disk GUID and partition name."""
    return uuid.uuid5(disk_guid, name)


def crc32(data) -> int:
    return zlib.crc32(bytes(data)) & 0xFFFFFFFF


def header_crc(raw) -> int:
    """CRC32 over the first GPT_HEADER_SIZE bytes with the CRC field zeroed."""
    hdr = bytearray(raw[:GPT_HEADER_SIZE])
    struct.pack_into('<I', hdr, _HEADER_CRC_OFFSET, 0)
    return crc32(hdr)


# =====================================================================
# Decoded structures
# =====================================================================

@dataclass(frozen=True)
class GptHeader:
    signature: bytes
    revision: int
    header_size: int
    header_crc: int
    current_lba: int
    backup_lba: int
    first_usable_lba: int
    last_usable_lba: int
    disk_guid: uuid.UUID
    entries_lba: int
    num_entries: int
    entry_size: int
    entries_crc: int


@dataclass(frozen=True)
class PartitionEntry:
    type_guid: uuid.UUID
    unique_guid: uuid.UUID
    first_lba: int
    last_lba: int
    attributes: int
    name: str


@dataclass(frozen=True)
class StructuralBlocks:
    """Every non-partition byte range of a GPT disk, with absolute offsets."""
    mbr: bytes
    primary_header: bytes
    primary_entries: bytes
    backup_entries: bytes
    backup_header: bytes
    primary_header_offset: int
    primary_entries_offset: int
    backup_entries_offset: int
    backup_header_offset: int

    def __iter__(self):
        yield 0, self.mbr
        yield self.primary_header_offset, self.primary_header
        yield self.primary_entries_offset, self.primary_entries
        yield self.backup_entries_offset, self.backup_entries
        yield self.backup_header_offset, self.backup_header


# =====================================================================
# Encoding
# =====================================================================

def make_protective_mbr(total_sectors, sector_size=512):
    """Build a protective MBR sector for a GPT disk."""
    mbr = bytearray(sector_size)
    off = MBR_PARTITION_OFFSET
    mbr[off] = 0x00      # Boot indicator (not bootable)
    mbr[off + 1] = 0x00  # CHS start
    mbr[off + 2] = 0x02
    mbr[off + 3] = 0x00
    mbr[off + 4] = MBR_PROTECTIVE_TYPE
    mbr[off + 5] = 0xFF  # CHS end
    mbr[off + 6] = 0xFF
    mbr[off + 7] = 0xFF
    struct.pack_into('<I', mbr, off + 8, 1)  # Start LBA = 1
    max_sectors = min(total_sectors - 1, 0xFFFFFFFF)
    struct.pack_into('<I', mbr, off + 12, max_sectors)
    mbr[510:512] = MBR_SIGNATURE
    return bytes(mbr)


def encode_entry(type_guid, unique_guid, first_lba, last_lba, name, attributes=0):
    """Encode one 128-byte partition entry."""
    name_field = encode_name(name).ljust(GPT_NAME_SIZE, b'\x00')
    return struct.pack(_ENTRY_FORMAT, guid_to_bytes(type_guid), guid_to_bytes(unique_guid),
                       first_lba, last_lba, attributes, name_field)


def encode_entries(layout: DiskLayout, disk_guid: uuid.UUID) -> bytes:
    """Build the full partition entry array, unused slots zeroed."""
    entries = bytearray(layout.entry_array_size)
    for i, part in enumerate(layout.partitions):
        off = i * GPT_ENTRY_SIZE
        entries[off:off + GPT_ENTRY_SIZE] = encode_entry(
            part.spec.type_guid,
            partition_guid(disk_guid, part.name),
            part.first_lba(layout.sector_size),
            part.last_lba(layout.sector_size),
            part.name,
        )
    return bytes(entries)


def encode_header(my_lba, alt_lba, first_usable_lba, last_usable_lba, disk_guid,
                  entries_lba, num_entries, entries_crc, sector_size=512):
    """Build a GPT header sector; the header CRC is computed over the zeroed field."""
    hdr = bytearray(sector_size)
    struct.pack_into(_HEADER_FORMAT, hdr, 0,
                     GPT_SIGNATURE, GPT_REVISION, GPT_HEADER_SIZE,
                     0,  # CRC32 placeholder
                     0,  # Reserved
                     my_lba, alt_lba, first_usable_lba, last_usable_lba,
                     guid_to_bytes(disk_guid), entries_lba, num_entries,
                     GPT_ENTRY_SIZE, entries_crc)
    struct.pack_into('<I', hdr, _HEADER_CRC_OFFSET, header_crc(hdr))
    return bytes(hdr)


def serialize(layout: DiskLayout, disk_guid) -> StructuralBlocks:
    """Produce the protective MBR, both GPT headers and both entry arrays.

    disk_guid is a uuid.UUID or a seed string passed to disk_guid_from_seed.
    """
    if not isinstance(disk_guid, uuid.UUID):
        disk_guid = disk_guid_from_seed(str(disk_guid))

    sector = layout.sector_size
    total_sectors = layout.total_sectors
    first_usable_lba = layout.first_usable_lba
    last_usable_lba = layout.last_usable_lba
    if last_usable_lba < first_usable_lba:
        raise ValidationError(f"disk of {total_sectors} sectors has no usable LBAs "
                              f"after the GPT header regions")
    for part in layout.partitions:
        if part.first_lba(sector) < first_usable_lba or part.last_lba(sector) > last_usable_lba:
            raise ValidationError(f"partition '{part.name}' lies outside the usable LBA "
                                  f"range {first_usable_lba}-{last_usable_lba}")

    entries = encode_entries(layout, disk_guid)
    # CRC covers num_entries * entry_size bytes, not the sector padding
    entries_crc = crc32(entries[:layout.max_entries * GPT_ENTRY_SIZE])

    backup_header_lba = total_sectors - 1
    backup_entries_lba = backup_header_lba - layout.entry_sectors

    def make_header(my_lba, alt_lba, entries_lba):
        return encode_header(my_lba, alt_lba, first_usable_lba, last_usable_lba, disk_guid,
                             entries_lba, layout.max_entries, entries_crc, sector)

    return StructuralBlocks(
        mbr=make_protective_mbr(total_sectors, sector),
        primary_header=make_header(1, backup_header_lba, 2),
        primary_entries=entries,
        backup_entries=entries,
        backup_header=make_header(backup_header_lba, 1, backup_entries_lba),
        primary_header_offset=sector,
        primary_entries_offset=2 * sector,
        backup_entries_offset=backup_entries_lba * sector,
        backup_header_offset=backup_header_lba * sector,
    )


# =====================================================================
# Decoding
# =====================================================================

def parse_protective_mbr(raw):
    """Return (type, start_lba, size_in_sectors) of the first MBR record."""
    if bytes(raw[510:512]) != MBR_SIGNATURE:
        raise ValidationError("missing MBR boot signature")
    off = MBR_PARTITION_OFFSET
    start, count = struct.unpack_from('<II', raw, off + 8)
    return raw[off + 4], start, count


def parse_header(raw, verify=True) -> GptHeader:
    fields = struct.unpack_from(_HEADER_FORMAT, raw, 0)
    (signature, revision, size, crc, _reserved, current_lba, backup_lba,
     first_usable, last_usable, guid, entries_lba, num_entries, entry_size,
     entries_crc) = fields
    if verify:
        if signature != GPT_SIGNATURE:
            raise ValidationError(f"bad GPT signature {signature!r}")
        expected = header_crc(raw)
        if crc != expected:
            raise ValidationError(f"GPT header crc mismatch: {crc:#x}, should be {expected:#x}")
    return GptHeader(signature, revision, size, crc, current_lba, backup_lba,
                     first_usable, last_usable, uuid.UUID(bytes_le=guid), entries_lba,
                     num_entries, entry_size, entries_crc)


def parse_entries(raw, count, entry_size=GPT_ENTRY_SIZE) -> List[PartitionEntry]:
    """Decode the used entries of a partition entry array."""
    entries = []
    for i in range(count):
        chunk = raw[i * entry_size:i * entry_size + GPT_ENTRY_SIZE]
        type_guid, unique_guid, first, last, attrs, name = struct.unpack(_ENTRY_FORMAT, chunk)
        if type_guid == bytes(16):
            continue
        name = name.decode('utf-16-le').rstrip('\x00')
        entries.append(PartitionEntry(uuid.UUID(bytes_le=type_guid),
                                      uuid.UUID(bytes_le=unique_guid),
                                      first, last, attrs, name))
    return entries


def check_image(path, sector_size=512):
    """Validate the GPT structures of a finished image file.

    Returns (primary_header, entries). Raises ValidationError on the first
    defect found.
    """
    with open(path, 'rb') as f:
        mbr = f.read(sector_size)
        ptype, _, _ = parse_protective_mbr(mbr)
        if ptype != MBR_PROTECTIVE_TYPE:
            raise ValidationError(f"MBR partition type is {ptype:#x}, expected protective GPT")

        primary = parse_header(f.read(sector_size))
        if primary.current_lba != 1:
            raise ValidationError(f"primary header claims LBA {primary.current_lba}")
        array_size = primary.num_entries * primary.entry_size

        f.seek(primary.entries_lba * sector_size)
        primary_entries = f.read(array_size)
        if crc32(primary_entries) != primary.entries_crc:
            raise ValidationError("primary partition entry array crc mismatch")

        f.seek(primary.backup_lba * sector_size)
        backup = parse_header(f.read(sector_size))
        if backup.current_lba != primary.backup_lba or backup.backup_lba != primary.current_lba:
            raise ValidationError("primary and backup GPT headers do not reference each other")

        f.seek(backup.entries_lba * sector_size)
        backup_entries = f.read(array_size)
        if crc32(backup_entries) != backup.entries_crc:
            raise ValidationError("backup partition entry array crc mismatch")
        if backup_entries != primary_entries:
            raise ValidationError("primary and backup partition entry arrays differ")

    return primary, parse_entries(primary_entries, primary.num_entries, primary.entry_size)
