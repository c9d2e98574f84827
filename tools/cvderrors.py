#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Error types raised while planning, serializing and assembling disk images."""


class CvdImageError(Exception):
    """Base class for every error cvd2img reports."""


class ValidationError(CvdImageError):
    """Bad layout input, detected before any output is written."""


class ContentMismatchError(CvdImageError):
    """Source content is larger than the size declared for its partition."""

    def __init__(self, name, declared, actual):
        self.name = name
        self.declared = declared
        self.actual = actual
        super().__init__(f"partition '{name}': source has at least {actual} bytes, "
                         f"declared size is {declared} bytes")


class ImageIOError(CvdImageError):
    """Read or write failure while producing an image file."""

    def __init__(self, message, path=None, offset=None, name=None):
        self.path = path
        self.offset = offset
        self.name = name
        where = []
        if name is not None:
            where.append(f"partition '{name}'")
        if offset is not None:
            where.append(f"offset {offset:#x}")
        if path is not None:
            where.append(str(path))
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)


class AssemblyCancelled(CvdImageError):
    """Assembly stopped because the cancel event was set."""


class HostToolError(CvdImageError):
    """A Cuttlefish host tool could not be run or exited with an error."""

    def __init__(self, tool, message, stderr=""):
        self.tool = tool
        self.stderr = stderr
        super().__init__(f"{tool}: {message}")
