"""
End-to-end test of the cvd2img command line with mocked host tools.

Usage: python3 -m unittest tools/test_cvd2img.py
"""

import contextlib
import io
import os
import tempfile
import unittest
from unittest import mock

import cvd2img
from cvdgpt import check_image

SMALL_SETS = {
    "system": (
        ("blank:65536", "misc"),
        ("boot.img", "boot_a"),
        ("boot.img", "boot_b"),
        ("super.img", "super"),
        ("blank:131072", "metadata"),
    ),
    "properties": (
        ("uboot_env.img", "uboot_env"),
        ("vbmeta.img", "vbmeta"),
        ("blank:65536", "frp"),
        ("bootconfig", "bootconfig"),
    ),
}


def fake_host_tool(cvd_dir, tool, args, env):
    args = [str(a) for a in args]
    if tool == "mkenvimage_slim":
        with open(args[args.index("-output_path") + 1], 'wb') as f:
            f.write(b'\x5a' * 4096)
    elif tool == "avbtool" and args[0] == "make_vbmeta_image":
        with open(args[args.index("--output") + 1], 'wb') as f:
            f.write(b'\xa5' * 1024)


class TestCommandLine(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.cvd_dir = os.path.join(self.root, "cvd")
        os.makedirs(self.cvd_dir)
        for name, size in (("boot.img", 70_000), ("super.img", 200_000)):
            with open(os.path.join(self.cvd_dir, name), 'wb') as f:
                f.write(bytes(range(256)) * (size // 256) + b'\x01' * (size % 256))

    def tearDown(self):
        self._tmp.cleanup()

    def out(self, name):
        return os.path.join(self.root, name)

    def run_main(self, *extra):
        argv = [self.cvd_dir, "--arch", "x86_64",
                "-s", self.out("system.img"),
                "-p", self.out("properties.img"),
                "-v", self.out("properties_virgl.img"),
                "--alignment", "4096"] + list(extra)
        stdout = io.StringIO()
        stderr = io.StringIO()
        with mock.patch.dict(cvd2img.PARTITION_SETS, {"x86_64": SMALL_SETS}), \
                mock.patch("cvdcomponents.run_host_tool", side_effect=fake_host_tool), \
                contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            status = cvd2img.main(argv)
        return status, stdout.getvalue(), stderr.getvalue()

    def test_creates_three_images(self):
        status, stdout, stderr = self.run_main("--check")
        self.assertEqual(status, 0, msg=stderr)

        _, entries = check_image(self.out("system.img"))
        self.assertEqual([e.name for e in entries], ["misc", "boot_a", "boot_b", "super", "metadata"])
        for name in ("properties.img", "properties_virgl.img"):
            _, entries = check_image(self.out(name))
            self.assertEqual([e.name for e in entries], ["uboot_env", "vbmeta", "frp", "bootconfig"])

        self.assertIn("Creating", stdout)
        self.assertIn("GPT: partition 4: 'super'", stdout)
        self.assertIn("verified", stdout)

    def test_virgl_image_uses_mesa_renderer(self):
        status, _, stderr = self.run_main()
        self.assertEqual(status, 0, msg=stderr)
        with open(self.out("properties.img"), 'rb') as f:
            props = f.read()
        with open(self.out("properties_virgl.img"), 'rb') as f:
            virgl = f.read()
        self.assertNotEqual(props, virgl)
        self.assertIn(b'androidboot.hardware.egl=angle', props)
        self.assertIn(b'androidboot.hardware.egl=mesa', virgl)

    def test_rebuild_is_byte_identical(self):
        self.run_main()
        with open(self.out("system.img"), 'rb') as f:
            first = f.read()
        self.run_main("--workers", "3")
        with open(self.out("system.img"), 'rb') as f:
            self.assertEqual(f.read(), first)

    def test_missing_cvd_dir(self):
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            status = cvd2img.main([os.path.join(self.root, "nope")])
        self.assertEqual(status, 1)
        self.assertIn("ERROR", stderr.getvalue())

    def test_missing_image_is_reported(self):
        os.remove(os.path.join(self.cvd_dir, "super.img"))
        status, _, stderr = self.run_main()
        self.assertEqual(status, 1)
        self.assertIn("super.img", stderr)
        self.assertFalse(os.path.exists(self.out("system.img")))


if __name__ == "__main__":
    unittest.main()
