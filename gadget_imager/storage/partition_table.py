"""MBR, GPT and hybrid partition table generation and writing.

Tables are built from a laid-out volume and written byte for byte into the
disk image: the MBR at sector 0, the GPT header at LBA 1 followed by 128
entries of 128 bytes, and the backup entries and header at the end of disk.
"""

from __future__ import annotations

import struct
import uuid
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from gadget_imager.domain.models import Schema, Volume, ROOTFS_NAME
from gadget_imager.gadget.layout import (
    GPT_ENTRIES_BYTES,
    GPT_ENTRY_COUNT,
    GPT_ENTRY_SIZE,
    align_up,
    gpt_primary_end,
    partition_table_overhead,
    should_skip_structure,
)
from gadget_imager.logging import LoggerFactory
from gadget_imager.storage.exceptions import LayoutError, PartitionTableError


log = LoggerFactory.for_disk()

MBR_PARTITION_TABLE_OFFSET = 446
MBR_ENTRY_SIZE = 16
MBR_SIGNATURE_OFFSET = 510
MBR_SIGNATURE = b"\x55\xaa"
MBR_MAX_PRIMARY = 4
MBR_PROTECTIVE_TYPE = 0xEE
MBR_BOOTABLE = 0x80
# CHS fields are unused, the LBA fields are authoritative
CHS_UNUSED = b"\xfe\xff\xff"

GPT_SIGNATURE = b"EFI PART"
GPT_REVISION = 0x00010000
GPT_HEADER_SIZE = 92
GPT_HEADER_FORMAT = "<8sIIIIQQQQ16sQIII"
GPT_ENTRY_FORMAT = "<16s16sQQQ72s"
GPT_NAME_CHARS = 36


@dataclass
class PartitionEntry:
    number: int
    name: str
    start: int
    size: int
    gpt_type: Optional[str] = None
    mbr_type: Optional[int] = None
    bootable: bool = False
    unique_guid: Optional[bytes] = None


@dataclass
class PartitionTable:
    schema: Schema
    sector_size: int
    image_size: int
    partitions: list[PartitionEntry] = field(default_factory=list)
    disk_guid: Optional[bytes] = None

    @property
    def total_sectors(self) -> int:
        return self.image_size // self.sector_size

    @property
    def entries_sectors(self) -> int:
        return align_up(GPT_ENTRIES_BYTES, self.sector_size) // self.sector_size

    @property
    def first_usable_lba(self) -> int:
        return gpt_primary_end(self.sector_size) // self.sector_size

    @property
    def backup_entries_lba(self) -> int:
        return self.total_sectors - 1 - self.entries_sectors

    @property
    def last_usable_lba(self) -> int:
        return self.backup_entries_lba - 1

    def write(self, path: Path, ops) -> None:
        """Write the table into an existing image file."""
        if self.schema == Schema.MBR:
            ops.write_at(path, MBR_PARTITION_TABLE_OFFSET, self.mbr_table())
            return
        entries = self.gpt_entries()
        entries_crc = zlib.crc32(entries)
        ops.write_at(path, MBR_PARTITION_TABLE_OFFSET, self.protective_mbr_table())
        ops.write_at(path, self.sector_size, self.gpt_header(entries_crc, primary=True))
        ops.write_at(path, 2 * self.sector_size, entries)
        ops.write_at(path, self.backup_entries_lba * self.sector_size, entries)
        ops.write_at(
            path,
            (self.total_sectors - 1) * self.sector_size,
            self.gpt_header(entries_crc, primary=False),
        )

    # -- MBR ------------------------------------------------------------------

    def _mbr_entry(self, status: int, part_type: int, start_lba: int, sectors: int) -> bytes:
        return struct.pack(
            "<B3sB3sII", status, CHS_UNUSED, part_type, CHS_UNUSED, start_lba, sectors
        )

    def _mbr_table(self, entries: list[bytes]) -> bytes:
        """Partition table and signature, bytes 446 to 511 of sector 0.

        Boot code before byte 446 is left untouched.
        """
        table = b"".join(entries).ljust(MBR_MAX_PRIMARY * MBR_ENTRY_SIZE, b"\x00")
        return table + MBR_SIGNATURE

    def mbr_table(self) -> bytes:
        entries = []
        for partition in self.partitions:
            entries.append(
                self._mbr_entry(
                    MBR_BOOTABLE if partition.bootable else 0,
                    partition.mbr_type,
                    partition.start // self.sector_size,
                    -(-partition.size // self.sector_size),
                )
            )
        return self._mbr_table(entries)

    def _protective_entry(self, sectors: int) -> bytes:
        return struct.pack(
            "<B3sB3sII", 0, b"\x00\x02\x00", MBR_PROTECTIVE_TYPE, CHS_UNUSED, 1, sectors
        )

    def protective_mbr_table(self) -> bytes:
        if self.schema != Schema.HYBRID:
            sectors = min(self.total_sectors - 1, 0xFFFFFFFF)
            return self._mbr_table([self._protective_entry(sectors)])

        # hybrid: up to three partitions visible to MBR-only firmware, then the
        # protective entry covering the GPT structures
        entries = []
        for partition in self.partitions:
            if partition.mbr_type is None:
                continue
            if len(entries) == MBR_MAX_PRIMARY - 1:
                break
            entries.append(
                self._mbr_entry(
                    MBR_BOOTABLE if partition.bootable else 0,
                    partition.mbr_type,
                    partition.start // self.sector_size,
                    -(-partition.size // self.sector_size),
                )
            )
        entries.append(self._protective_entry(self.first_usable_lba - 1))
        return self._mbr_table(entries)

    # -- GPT ------------------------------------------------------------------

    def gpt_entries(self) -> bytes:
        data = bytearray(GPT_ENTRIES_BYTES)
        for index, partition in enumerate(self.partitions):
            first_lba = partition.start // self.sector_size
            last_lba = first_lba + -(-partition.size // self.sector_size) - 1
            name = partition.name[:GPT_NAME_CHARS].encode("utf-16-le")
            entry = struct.pack(
                GPT_ENTRY_FORMAT,
                uuid.UUID(partition.gpt_type).bytes_le,
                partition.unique_guid,
                first_lba,
                last_lba,
                0,
                name,
            )
            data[index * GPT_ENTRY_SIZE:(index + 1) * GPT_ENTRY_SIZE] = entry
        return bytes(data)

    def gpt_header(self, entries_crc: int, *, primary: bool) -> bytes:
        backup_lba = self.total_sectors - 1
        if primary:
            current_lba, other_lba, entries_lba = 1, backup_lba, 2
        else:
            current_lba, other_lba, entries_lba = backup_lba, 1, self.backup_entries_lba

        def pack(crc: int) -> bytes:
            return struct.pack(
                GPT_HEADER_FORMAT,
                GPT_SIGNATURE,
                GPT_REVISION,
                GPT_HEADER_SIZE,
                crc,
                0,
                current_lba,
                other_lba,
                self.first_usable_lba,
                self.last_usable_lba,
                self.disk_guid,
                entries_lba,
                GPT_ENTRY_COUNT,
                GPT_ENTRY_SIZE,
                entries_crc,
            )

        return pack(zlib.crc32(pack(0)))


def _parse_mbr_type(value: str, volume: Volume, name: str) -> int:
    try:
        parsed = int(value, 16)
    except ValueError:
        parsed = -1
    if len(value) != 2 or not 0 <= parsed <= 0xFF:
        raise LayoutError(volume.name, f"structure {name} has invalid MBR type {value!r}")
    return parsed


def _validate_gpt_type(value: str, volume: Volume, name: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise LayoutError(
            volume.name, f"structure {name} has invalid GPT type {value!r}"
        ) from None
    return value


def _new_guid(ops) -> bytes:
    """Random version 4 GUID in on-disk (mixed endian) order."""
    return uuid.UUID(bytes=ops.random_bytes(16), version=4).bytes_le


def generate_partition_table(
    volume: Volume,
    sector_size: int,
    image_size: int,
    is_seeded: bool,
    ops,
) -> tuple[PartitionTable, int, int]:
    """Build the table for a laid-out volume.

    Returns the table and the partition numbers of the rootfs and boot
    structures (-1 when absent).
    """
    table = PartitionTable(volume.schema, sector_size, image_size)
    if volume.schema != Schema.MBR:
        table.disk_guid = _new_guid(ops)

    number = 1
    rootfs_number = -1
    boot_number = -1
    gpt_end = gpt_primary_end(sector_size)
    backup_start = image_size - partition_table_overhead(volume.schema, sector_size)

    for structure in volume.structures:
        if not structure.is_partition or should_skip_structure(structure, is_seeded):
            continue
        name = structure.name
        if structure.is_rootfs and not name:
            name = ROOTFS_NAME

        if structure.start_offset % sector_size:
            raise LayoutError(
                volume.name,
                f"structure {structure.display_name} starts at {structure.start_offset}, "
                f"not a multiple of the sector size {sector_size}",
            )

        entry = PartitionEntry(
            number=number,
            name=name,
            start=structure.start_offset,
            size=structure.size,
            bootable=structure.is_system_boot,
        )
        if volume.schema == Schema.MBR:
            if number > MBR_MAX_PRIMARY:
                raise LayoutError(
                    volume.name, f"more than {MBR_MAX_PRIMARY} partitions in an MBR table"
                )
            entry.mbr_type = _parse_mbr_type(
                structure.partition_type(Schema.MBR), volume, structure.display_name
            )
        else:
            if structure.start_offset < gpt_end or structure.end > backup_start:
                raise LayoutError(
                    volume.name,
                    f'The structure "{structure.display_name}" overlaps GPT header or '
                    "GPT partition table",
                )
            entry.gpt_type = _validate_gpt_type(
                structure.partition_type(Schema.GPT), volume, structure.display_name
            )
            entry.unique_guid = _new_guid(ops)
            if volume.schema == Schema.HYBRID and "," in structure.type:
                entry.mbr_type = _parse_mbr_type(
                    structure.partition_type(Schema.MBR), volume, structure.display_name
                )

        if structure.is_rootfs:
            rootfs_number = number
        if structure.is_system_boot:
            boot_number = number
        table.partitions.append(entry)
        number += 1

    log.debug(
        f"Partition table for {volume.name}: {volume.schema.value}, "
        f"{len(table.partitions)} partitions"
    )
    return table, rootfs_number, boot_number


def write_partition_table(table: PartitionTable, path: Path, ops) -> None:
    try:
        table.write(path, ops)
    except (OSError, ValueError, struct.error) as error:
        raise PartitionTableError(str(path), str(error)) from error
