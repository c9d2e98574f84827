"""
Tests for image assembly (cvdassemble.py).

Usage: python3 -m unittest tools/test_cvdassemble.py
"""

import io
import os
import tempfile
import threading
import unittest
import uuid

from cvdassemble import assemble, build_image
from cvderrors import AssemblyCancelled, ContentMismatchError, ImageIOError, ValidationError
from cvdgpt import check_image, serialize
from cvdlayout import MIB, SECTOR_SIZE, PartitionSpec, plan

DISK_GUID = uuid.UUID("36bc51fd-c3d6-4109-a2ac-35bddd757e2a")


def pattern(size, seed):
    return bytes((i * 7 + seed) & 0xFF for i in range(size))


class TestAssemble(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def write_source(self, name, data):
        path = os.path.join(self.tmp, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def sample_specs(self):
        boot = self.write_source("boot.img", pattern(300_001, 1))
        vendor = self.write_source("vendor.img", pattern(4096, 2))
        return [
            PartitionSpec.blank("misc", MIB, 0),
            PartitionSpec.from_file("boot_a", boot, 1),
            PartitionSpec.from_file("vendor_boot_a", vendor, 2),
        ]

    def test_image_contents(self):
        specs = self.sample_specs()
        out = os.path.join(self.tmp, "system.img")
        result = build_image(specs, out, DISK_GUID)
        layout = result.layout

        self.assertEqual(os.path.getsize(out), layout.total_size)
        self.assertEqual(result.partitions, [
            ("misc", 0, MIB),
            ("boot_a", 300_001, 300_032),
            ("vendor_boot_a", 4096, 4096),
        ])

        with open(out, 'rb') as f:
            image = f.read()
        for part in layout.partitions:
            region = image[part.start_offset:part.reserved_end]
            if part.spec.source is None:
                self.assertEqual(region, bytes(len(region)))
                continue
            with open(part.spec.source, 'rb') as f:
                data = f.read()
            self.assertEqual(region[:len(data)], data)
            self.assertEqual(region[len(data):], bytes(len(region) - len(data)))

        header, entries = check_image(out)
        self.assertEqual([e.name for e in entries], ["misc", "boot_a", "vendor_boot_a"])
        self.assertEqual(header.backup_lba, layout.total_sectors - 1)

    def test_structural_blocks_in_place(self):
        specs = self.sample_specs()
        layout = plan(specs)
        blocks = serialize(layout, DISK_GUID)
        out = os.path.join(self.tmp, "system.img")
        assemble(layout, blocks, out)
        with open(out, 'rb') as f:
            image = f.read()
        for offset, data in blocks:
            self.assertEqual(image[offset:offset + len(data)], data)

    def test_assembly_is_idempotent(self):
        specs = self.sample_specs()
        first = os.path.join(self.tmp, "a.img")
        second = os.path.join(self.tmp, "b.img")
        build_image(specs, first, DISK_GUID)
        build_image(specs, second, DISK_GUID)
        with open(first, 'rb') as a, open(second, 'rb') as b:
            self.assertEqual(a.read(), b.read())

    def test_parallel_matches_sequential(self):
        specs = self.sample_specs()
        seq = os.path.join(self.tmp, "seq.img")
        par = os.path.join(self.tmp, "par.img")
        build_image(specs, seq, DISK_GUID, workers=1)
        result = build_image(specs, par, DISK_GUID, workers=4)
        self.assertEqual([p[0] for p in result.partitions], ["misc", "boot_a", "vendor_boot_a"])
        with open(seq, 'rb') as a, open(par, 'rb') as b:
            self.assertEqual(a.read(), b.read())

    def test_short_source_is_zero_padded(self):
        # Declared 5_000_000 bytes, source one byte short
        data = pattern(4_999_999, 3)
        path = self.write_source("super.img", data)
        spec = PartitionSpec("super", 5_000_000, 0, source=path)
        out = os.path.join(self.tmp, "super_disk.img")
        result = build_image([spec], out, DISK_GUID)
        self.assertEqual(result.partitions, [("super", 4_999_999, spec.reserved_size)])

        part = result.layout.partitions[0]
        with open(out, 'rb') as f:
            f.seek(part.start_offset)
            region = f.read(spec.reserved_size)
        self.assertEqual(region[:len(data)], data)
        self.assertEqual(region[len(data):], bytes(spec.reserved_size - len(data)))

    def test_long_source_is_content_mismatch(self):
        path = self.write_source("super.img", pattern(5_000_001, 4))
        spec = PartitionSpec("super", 5_000_000, 0, source=path)
        out = os.path.join(self.tmp, "super_disk.img")
        with self.assertRaises(ContentMismatchError) as cm:
            build_image([spec], out, DISK_GUID)
        self.assertEqual(cm.exception.name, "super")
        self.assertEqual(cm.exception.declared, 5_000_000)
        self.assertGreater(cm.exception.actual, 5_000_000)
        # Partial artifact stays, correctly sized
        self.assertTrue(os.path.exists(out))
        self.assertEqual(os.path.getsize(out), plan([spec]).total_size)

    def test_file_object_source_is_borrowed(self):
        data = pattern(10_000, 5)
        stream = io.BytesIO(data)
        spec = PartitionSpec("bootconfig", len(data), 0, source=stream)
        out = os.path.join(self.tmp, "props.img")
        result = build_image([spec], out, DISK_GUID)
        self.assertFalse(stream.closed)
        part = result.layout.partitions[0]
        with open(out, 'rb') as f:
            f.seek(part.start_offset)
            self.assertEqual(f.read(len(data)), data)

    def test_small_chunks(self):
        specs = self.sample_specs()
        layout = plan(specs)
        blocks = serialize(layout, DISK_GUID)
        small = os.path.join(self.tmp, "small.img")
        large = os.path.join(self.tmp, "large.img")
        assemble(layout, blocks, small, chunk_size=1000)
        assemble(layout, blocks, large)
        with open(small, 'rb') as a, open(large, 'rb') as b:
            self.assertEqual(a.read(), b.read())

    def test_duplicate_name_creates_no_file(self):
        path = self.write_source("vendor.img", pattern(512, 6))
        specs = [PartitionSpec.from_file("vendor", path, 0),
                 PartitionSpec.from_file("vendor", path, 1)]
        out = os.path.join(self.tmp, "dup.img")
        with self.assertRaises(ValidationError) as cm:
            build_image(specs, out, DISK_GUID)
        self.assertIn("vendor", str(cm.exception))
        self.assertFalse(os.path.exists(out))

    def test_capacity_exceeded_creates_no_file(self):
        specs = [PartitionSpec.blank(f"p{i}", SECTOR_SIZE, i) for i in range(130)]
        out = os.path.join(self.tmp, "many.img")
        with self.assertRaises(ValidationError):
            build_image(specs, out, DISK_GUID, alignment=4096)
        self.assertFalse(os.path.exists(out))

    def test_missing_source(self):
        spec = PartitionSpec("boot", 4096, 0, source=os.path.join(self.tmp, "nope.img"))
        out = os.path.join(self.tmp, "missing.img")
        with self.assertRaises(ImageIOError) as cm:
            build_image([spec], out, DISK_GUID)
        self.assertEqual(cm.exception.name, "boot")

    def test_unwritable_output(self):
        specs = [PartitionSpec.blank("misc", MIB, 0)]
        out = os.path.join(self.tmp, "no_such_dir", "system.img")
        with self.assertRaises(ImageIOError) as cm:
            build_image(specs, out, DISK_GUID)
        self.assertEqual(cm.exception.path, out)

    def test_cancel(self):
        specs = self.sample_specs()
        cancel = threading.Event()
        cancel.set()
        out = os.path.join(self.tmp, "cancelled.img")
        with self.assertRaises(AssemblyCancelled):
            build_image(specs, out, DISK_GUID, cancel=cancel)
        # Length was set before cancellation
        self.assertEqual(os.path.getsize(out), plan(specs).total_size)

    def test_cancel_parallel(self):
        specs = self.sample_specs()
        cancel = threading.Event()
        cancel.set()
        out = os.path.join(self.tmp, "cancelled.img")
        with self.assertRaises(AssemblyCancelled):
            build_image(specs, out, DISK_GUID, workers=2, cancel=cancel)


if __name__ == "__main__":
    unittest.main()
