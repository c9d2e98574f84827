#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
cvdassemble.py - Write a planned GPT disk image to a file

The output is sized to layout.total_size before anything else is
written, then the structural blocks go to their fixed offsets and each
partition's content is streamed to its start offset, zero-padded to
its reserved size. Partition regions are disjoint, so copies may run on
a thread pool, each job writing through its own file handle.

A failed assembly leaves the partial file in place.
"""

import contextlib
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Tuple

from cvderrors import AssemblyCancelled, ContentMismatchError, ImageIOError
from cvdgpt import StructuralBlocks, serialize
from cvdlayout import MIB, DiskLayout, PlacedPartition, plan


@dataclass
class AssemblyResult:
    path: str
    total_size: int
    layout: DiskLayout
    # (name, source bytes copied, reserved size)
    partitions: List[Tuple[str, int, int]] = field(default_factory=list)


def _check_cancel(cancel, name):
    if cancel is not None and cancel.is_set():
        raise AssemblyCancelled(f"assembly cancelled before partition '{name}' completed")


def _write_at(out, offset, data, path, name):
    try:
        out.seek(offset)
        n = out.write(data)
    except OSError as e:
        raise ImageIOError(f"write of {len(data)} bytes failed: {e}", path, offset, name) from e
    if n != len(data):
        raise ImageIOError(f"short write ({n} of {len(data)} bytes)", path, offset, name)
    return n


@contextlib.contextmanager
def _open_source(spec):
    """Yield a readable binary stream for spec.source, or None for blank partitions.

    File objects handed in by the caller are borrowed and left open.
    """
    source = spec.source
    if source is None or hasattr(source, 'read'):
        yield source
        return
    try:
        f = open(source, 'rb')
    except OSError as e:
        raise ImageIOError(f"cannot open source: {e}", source, None, spec.name) from e
    with f:
        yield f


def copy_partition(out, part: PlacedPartition, path, cancel=None, chunk_size=MIB):
    """Stream one partition into the open output file.

    Returns the number of source bytes copied. Raises ContentMismatchError
    if the source holds more than the declared size.
    """
    spec = part.spec
    reserved = spec.reserved_size
    written = 0
    copied = 0

    with _open_source(spec) as src:
        while src is not None:
            _check_cancel(cancel, spec.name)
            try:
                chunk = src.read(chunk_size)
            except OSError as e:
                raise ImageIOError(f"read failed: {e}", getattr(src, 'name', None),
                                   copied, spec.name) from e
            if not chunk:
                break
            if copied + len(chunk) > spec.size:
                raise ContentMismatchError(spec.name, spec.size, copied + len(chunk))
            written += _write_at(out, part.start_offset + written, chunk, path, spec.name)
            copied += len(chunk)

    # Zero-fill the rest of the reserved region
    zeroes = bytes(min(chunk_size, reserved - written)) if written < reserved else b''
    while written < reserved:
        _check_cancel(cancel, spec.name)
        n = min(len(zeroes), reserved - written)
        written += _write_at(out, part.start_offset + written, zeroes[:n], path, spec.name)

    if written != reserved:
        raise ImageIOError(f"wrote {written} bytes, reserved size is {reserved}",
                           path, part.start_offset, spec.name)
    return copied


def _copy_job(path, part, cancel, chunk_size):
    try:
        out = open(path, 'r+b')
    except OSError as e:
        raise ImageIOError(f"cannot open output: {e}", path, part.start_offset, part.name) from e
    with out:
        return copy_partition(out, part, path, cancel, chunk_size)


def assemble(layout: DiskLayout, blocks: StructuralBlocks, output_path, *,
             workers=1, cancel=None, chunk_size=MIB) -> AssemblyResult:
    """Create output_path and fill it according to layout.

    blocks are the structural sectors from cvdgpt.serialize(). cancel is an
    optional threading.Event checked between chunks.
    """
    path = os.fspath(output_path)
    result = AssemblyResult(path, layout.total_size, layout)

    try:
        out = open(path, 'wb')
    except OSError as e:
        raise ImageIOError(f"cannot create output: {e}", path) from e

    with out:
        try:
            out.truncate(layout.total_size)
        except OSError as e:
            raise ImageIOError(f"cannot set image length to {layout.total_size} bytes: {e}",
                               path) from e

        for offset, data in blocks:
            _write_at(out, offset, data, path, None)

        if workers <= 1:
            for part in layout.partitions:
                _check_cancel(cancel, part.name)
                copied = copy_partition(out, part, path, cancel, chunk_size)
                result.partitions.append((part.name, copied, part.spec.reserved_size))
            return result

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_copy_job, path, part, cancel, chunk_size)
                   for part in layout.partitions]
        try:
            for part, future in zip(layout.partitions, futures):
                result.partitions.append((part.name, future.result(), part.spec.reserved_size))
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return result


def build_image(specs, output_path, disk_guid, *, alignment=MIB, reserve_backup=True,
                workers=1, cancel=None, **plan_options) -> AssemblyResult:
    """Plan, serialize and assemble one image.

    Layout errors are raised before output_path is created.
    """
    layout = plan(specs, alignment, reserve_backup, **plan_options)
    blocks = serialize(layout, disk_guid)
    return assemble(layout, blocks, output_path, workers=workers, cancel=cancel)
