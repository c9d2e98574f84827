#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
cvdcomponents.py - Cuttlefish image components for cvd2img

Partition tables for the system and properties disks, resolution of
those tables against a Cuttlefish directory, and the host-tool steps
that prepare inputs (simg2img, mkenvimage_slim, avbtool).
"""

import os
import platform
import subprocess

from cvderrors import HostToolError, ValidationError
from cvdlayout import PartitionSpec

SPARSE_MAGIC = b'\x3A\xFF\x26\xED'
SPARSE_CANDIDATES = ("super.img", "userdata.img")

AVB_FOOTER_PARTITION_SIZE = 73728
VBMETA_SIZE = 65536
AVB_ALGORITHM = "SHA256_RSA4096"

ARCH_X86_64 = "x86_64"
ARCH_AARCH64 = "aarch64"
ARCHES = (ARCH_X86_64, ARCH_AARCH64)

# (image file or "blank:<bytes>", partition name)
SYSTEM_COMPONENTS = (
    ("blank:1048576", "misc"),
    ("boot.img", "boot_a"),
    ("boot.img", "boot_b"),
    ("init_boot.img", "init_boot_a"),
    ("init_boot.img", "init_boot_b"),
    ("vendor_boot.img", "vendor_boot_a"),
    ("vendor_boot.img", "vendor_boot_b"),
    ("vbmeta.img", "vbmeta_a"),
    ("vbmeta.img", "vbmeta_b"),
    ("vbmeta_system.img", "vbmeta_system_a"),
    ("vbmeta_system.img", "vbmeta_system_b"),
    ("vbmeta_vendor_dlkm.img", "vbmeta_vendor_dlkm_a"),
    ("vbmeta_vendor_dlkm.img", "vbmeta_vendor_dlkm_b"),
    ("vbmeta_system_dlkm.img", "vbmeta_system_dlkm_a"),
    ("vbmeta_system_dlkm.img", "vbmeta_system_dlkm_b"),
    ("super.img", "super"),
    ("userdata.img", "userdata"),
    ("blank:67108864", "metadata"),
)

PROPERTIES_COMPONENTS = (
    ("uboot_env.img", "uboot_env"),
    ("vbmeta.img", "vbmeta"),
    ("blank:1048576", "frp"),
    ("bootconfig", "bootconfig"),
)

# Both architectures boot from the same partition sets
PARTITION_SETS = {
    ARCH_X86_64: {"system": SYSTEM_COMPONENTS, "properties": PROPERTIES_COMPONENTS},
    ARCH_AARCH64: {"system": SYSTEM_COMPONENTS, "properties": PROPERTIES_COMPONENTS},
}

UBOOT_ENV = (b'uenvcmd=setenv bootargs "$cbootargs console=hvc0 '
             b'earlycon=pl011,mmio32,0x9000000 " && run bootcmd_android')

BOOTCONFIG_BASE = """\
androidboot.hypervisor.protected_vm.supported=0
androidboot.modem_simulator_ports=9600
androidboot.lcd_density=320
androidboot.vendor.audiocontrol.server.port=9410
androidboot.vendor.audiocontrol.server.cid=3
androidboot.cuttlefish_config_server_port=6800
androidboot.vendor.vehiclehal.server.port=9300
androidboot.fstab_suffix=cf.f2fs.hctr2
androidboot.enable_confirmationui=0
androidboot.hypervisor.vm.supported=0
androidboot.serialno=CUTTLEFISHCVD011
androidboot.setupwizard_mode=DISABLED
androidboot.cpuvulkan.version=4202496
androidboot.ddr_size=4915MB
androidboot.hardware.angle_feature_overrides_enabled=preferLinearFilterForYUV:mapUnspecifiedColorSpaceToPassThrough
androidboot.enable_bootanimation=1
androidboot.hardware.gralloc=minigbm
androidboot.vendor.vehiclehal.server.cid=2
androidboot.hypervisor.version=cf-qemu_cli
androidboot.hardware.vulkan=pastel
androidboot.opengles.version=196609
androidboot.wifi_mac_prefix=5554
androidboot.vsock_tombstone_port=6600
androidboot.hardware.hwcomposer=ranchu
androidboot.serialconsole=0
"""

BOOTCONFIG_BOOT_DEVICES = {
    ARCH_X86_64: "androidboot.boot_devices=pci0000:00/0000:00:0f.0,pci0000:00/0000:00:10.0\n",
    ARCH_AARCH64: "androidboot.boot_devices=4010000000.pcie\n",
}

BOOTCONFIG_RENDER_SW = "androidboot.hardware.egl=angle\n"
BOOTCONFIG_RENDER_VIRGL = """\
androidboot.hardware.egl=mesa
androidboot.hardware.hwcomposer.display_finder_mode=drm
androidboot.hardware.hwcomposer.mode=client
"""


def host_arch():
    """Architecture of the machine we run on, used when --arch is not given."""
    machine = platform.machine().lower()
    if machine in ("aarch64", "arm64"):
        return ARCH_AARCH64
    return ARCH_X86_64


# =====================================================================
# Component resolution
# =====================================================================

def resolve_specs(components, image_dir, type_id="linux"):
    """Turn (image, name) pairs into PartitionSpecs, in table order."""
    specs = []
    for ordinal, (image, name) in enumerate(components):
        if image.startswith("blank:"):
            size = int(image.split(":", 1)[1])
            specs.append(PartitionSpec.blank(name, size, ordinal, type_id))
            continue
        path = os.path.join(image_dir, image)
        if not os.path.isfile(path):
            raise ValidationError(f"image '{image}' for partition '{name}' not found in {image_dir}")
        specs.append(PartitionSpec.from_file(name, path, ordinal, type_id))
    return specs


# =====================================================================
# Host tools
# =====================================================================

def host_tool_env(cvd_dir):
    """Environment for running the Cuttlefish host tools out of cvd_dir."""
    env = dict(os.environ)
    cvd_dir = os.fspath(cvd_dir)
    env["HOME"] = cvd_dir
    env["ANDROID_TZDATA_ROOT"] = cvd_dir
    env["ANDROID_ROOT"] = cvd_dir
    return env


def run_host_tool(cvd_dir, tool, args, env):
    """Run bin/<tool> from the Cuttlefish directory; raise HostToolError on failure."""
    cmd = [os.path.join(cvd_dir, "bin", tool)] + [os.fspath(a) for a in args]
    try:
        result = subprocess.run(cmd, capture_output=True, env=env)
    except FileNotFoundError:
        raise HostToolError(tool, f"not found in {cvd_dir}") from None
    except OSError as e:
        raise HostToolError(tool, f"cannot execute: {e}") from e
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace")
        raise HostToolError(tool, f"exited with status {result.returncode}", stderr)
    return result


def is_sparse(path):
    """Check for the Android sparse image magic."""
    with open(path, "rb") as f:
        return f.read(4) == SPARSE_MAGIC


def transform_sparse_images(cvd_dir, env, images=SPARSE_CANDIDATES):
    """Expand sparse images in place with simg2img. Returns the expanded names."""
    expanded = []
    for image in images:
        src = os.path.join(cvd_dir, image)
        # Missing images are reported later by resolve_specs()
        if not os.path.isfile(src) or not is_sparse(src):
            continue
        tmp = os.path.splitext(src)[0] + ".tmp"
        run_host_tool(cvd_dir, "simg2img", [src, tmp], env)
        os.replace(tmp, src)
        expanded.append(image)
    return expanded


def add_hash_footer(cvd_dir, image, partition_name, env):
    run_host_tool(cvd_dir, "avbtool", [
        "add_hash_footer",
        "--image", image,
        "--partition_size", str(AVB_FOOTER_PARTITION_SIZE),
        "--partition_name", partition_name,
        "--key", os.path.join(cvd_dir, "etc", "cvd_avb_testkey.pem"),
        "--algorithm", AVB_ALGORITHM,
    ], env)


def create_uboot_env(cvd_dir, tmp_dir, env):
    """Build the signed U-Boot environment image. Returns its path."""
    uboot_env_path = os.path.join(tmp_dir, "uboot_env.img")
    input_path = os.path.join(tmp_dir, "uboot_env_input")
    with open(input_path, "wb") as f:
        f.write(UBOOT_ENV)

    run_host_tool(cvd_dir, "mkenvimage_slim",
                  ["-output_path", uboot_env_path, "-input_path", input_path], env)
    add_hash_footer(cvd_dir, uboot_env_path, "uboot_env", env)
    return uboot_env_path


def create_vbmeta(cvd_dir, tmp_dir, env):
    """Build the vbmeta image chaining uboot_env and bootconfig, padded to 64 KiB."""
    vbmeta_path = os.path.join(tmp_dir, "vbmeta.img")
    cvd_key = os.path.join(cvd_dir, "etc", "cvd.avbpubkey")

    run_host_tool(cvd_dir, "avbtool", [
        "make_vbmeta_image",
        "--output", vbmeta_path,
        "--chain_partition", f"uboot_env:1:{cvd_key}",
        "--chain_partition", f"bootconfig:2:{cvd_key}",
        "--key", os.path.join(cvd_dir, "etc", "cvd_avb_testkey.pem"),
        "--algorithm", AVB_ALGORITHM,
    ], env)

    size = os.path.getsize(vbmeta_path)
    if size > VBMETA_SIZE:
        raise ValidationError(f"vbmeta image is {size} bytes, max is {VBMETA_SIZE}")
    with open(vbmeta_path, "ab") as f:
        f.write(bytes(VBMETA_SIZE - size))
    return vbmeta_path


def bootconfig_text(arch, virgl):
    if arch not in BOOTCONFIG_BOOT_DEVICES:
        raise ValidationError(f"unknown architecture '{arch}'")
    render = BOOTCONFIG_RENDER_VIRGL if virgl else BOOTCONFIG_RENDER_SW
    return BOOTCONFIG_BASE + BOOTCONFIG_BOOT_DEVICES[arch] + render


def create_bootconfig(cvd_dir, tmp_dir, env, arch, virgl):
    """Write and sign the bootconfig properties for arch. Returns its path."""
    bootconfig_path = os.path.join(tmp_dir, "bootconfig")
    with open(bootconfig_path, "w", newline="\n") as f:
        f.write(bootconfig_text(arch, virgl))
    add_hash_footer(cvd_dir, bootconfig_path, "bootconfig", env)
    return bootconfig_path
