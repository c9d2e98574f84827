#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
cvd2img.py - Create raw GPT disk images from an Android Cuttlefish directory

Produces three images for a VMM:
  system.img            misc, A/B boot slots, vbmeta*, super, userdata, metadata
  properties.img        uboot_env, vbmeta, frp, bootconfig (software rendering)
  properties_virgl.img  same, with the virgl rendering bootconfig

Usage:
    python3 tools/cvd2img.py [--arch aarch64] [-s system.img] [-p properties.img]
                             [-v properties_virgl.img] <cvd_dir>
"""

import argparse
import os
import sys
import tempfile

from cvdassemble import assemble
from cvdcomponents import (ARCHES, PARTITION_SETS, create_bootconfig, create_uboot_env,
                           create_vbmeta, host_arch, host_tool_env, resolve_specs,
                           transform_sparse_images)
from cvderrors import CvdImageError
from cvdgpt import check_image, disk_guid_from_seed, serialize
from cvdlayout import DEFAULT_ALIGNMENT, parse_size, plan


def create_disk_image(specs, output, seed, args):
    """Plan, serialize and write one image, printing its partition table."""
    layout = plan(specs, args.alignment)
    disk_guid = disk_guid_from_seed(seed)
    blocks = serialize(layout, disk_guid)

    print(f"  GPT: disk_guid={disk_guid}")
    print(f"  GPT: first_usable={layout.first_usable_lba}, last_usable={layout.last_usable_lba}")
    for line in layout.describe():
        print(f"  GPT: {line}")

    result = assemble(layout, blocks, output, workers=args.workers)
    if args.check:
        check_image(output)
        print(f"  GPT: {output} verified")

    size_mib = result.total_size / (1024 * 1024)
    print(f"Disk image created: {output} ({size_mib:.1f} MiB)")
    return result


def create_disk_images(args):
    cvd_dir = args.cvd_dir
    partition_sets = PARTITION_SETS[args.arch]
    env = host_tool_env(cvd_dir)

    print("Transforming sparse images if needed")
    for image in transform_sparse_images(cvd_dir, env):
        print(f"  Expanded sparse image {image}")

    print(f"Creating {args.system} disk image")
    specs = resolve_specs(partition_sets["system"], cvd_dir)
    for spec in specs:
        print(f"  image: {spec.name} len={spec.size}")
    create_disk_image(specs, args.system, f"{args.seed}:system", args)

    with tempfile.TemporaryDirectory(prefix="cvd2img") as tmp_dir:
        print("Creating persistent components")
        create_uboot_env(cvd_dir, tmp_dir, env)
        create_vbmeta(cvd_dir, tmp_dir, env)
        create_bootconfig(cvd_dir, tmp_dir, env, args.arch, virgl=False)

        print(f"Creating {args.props} disk image")
        specs = resolve_specs(partition_sets["properties"], tmp_dir)
        create_disk_image(specs, args.props, f"{args.seed}:properties", args)

        create_bootconfig(cvd_dir, tmp_dir, env, args.arch, virgl=True)
        print(f"Creating {args.virgl_props} disk image")
        specs = resolve_specs(partition_sets["properties"], tmp_dir)
        create_disk_image(specs, args.virgl_props, f"{args.seed}:properties_virgl", args)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Create raw GPT disk images from Android Cuttlefish images")
    parser.add_argument("cvd_dir", help="Directory containing the Android Cuttlefish images")
    parser.add_argument("-a", "--arch", choices=ARCHES, default=host_arch(),
                        help="Architecture of the source images (default: host)")
    parser.add_argument("-s", "--system", default="system.img", metavar="FILE",
                        help="Output file for the system disk image")
    parser.add_argument("-p", "--props", default="properties.img", metavar="FILE",
                        help="Output file for the properties disk image")
    parser.add_argument("-v", "--virgl-props", default="properties_virgl.img", metavar="FILE",
                        help="Output file for the virgl variant of the properties disk image")
    parser.add_argument("--alignment", type=parse_size, default=DEFAULT_ALIGNMENT,
                        help="Partition start alignment, e.g. 1M or 4096 (default: 1M)")
    parser.add_argument("--workers", type=int, default=1,
                        help="Threads used to copy partition contents (default: 1)")
    parser.add_argument("--seed", default="cvd2img",
                        help="Seed for the disk GUIDs; equal seeds give identical images")
    parser.add_argument("--check", action="store_true",
                        help="Re-read each image and verify its GPT structures")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    if not os.path.isdir(args.cvd_dir):
        print(f"ERROR: Cuttlefish directory not found: {args.cvd_dir}", file=sys.stderr)
        return 1
    if args.workers < 1:
        print("ERROR: --workers must be at least 1", file=sys.stderr)
        return 1

    try:
        create_disk_images(args)
    except CvdImageError as e:
        print(f"ERROR: Image creation failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
