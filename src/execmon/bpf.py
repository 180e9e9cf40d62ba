"""Low-level bpf(2) interface for pinned maps.

Uses ctypes to call the bpf syscall directly - no bcc or libbpf dependency.

This module provides access to:
- BPF_OBJ_GET: open a map pinned in bpffs
- BPF_OBJ_GET_INFO_BY_FD: map metadata (name, key/value size, max entries)
- BPF_MAP_GET_NEXT_KEY / BPF_MAP_LOOKUP_ELEM: one pass over all entries

Failures raise OSError with the kernel errno, like the os module does.
"""

import ctypes
import errno
import os
import platform
from collections.abc import Iterator
from ctypes import Structure, byref, c_char, c_int, c_long, c_uint, c_uint32, c_uint64, sizeof
from dataclasses import dataclass

# ─────────────────────────────────────────────────────────────────────────────
# Library loading
# ─────────────────────────────────────────────────────────────────────────────

libc = ctypes.CDLL(None, use_errno=True)
libc.syscall.restype = c_long

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

# __NR_bpf per architecture (from the kernel syscall tables)
SYS_BPF = {
    "x86_64": 321,
    "i386": 357,
    "i686": 357,
    "aarch64": 280,
    "arm64": 280,
    "riscv64": 280,
    "armv7l": 386,
    "ppc64le": 361,
    "s390x": 351,
}

# enum bpf_cmd
BPF_MAP_LOOKUP_ELEM = 1
BPF_MAP_GET_NEXT_KEY = 4
BPF_OBJ_GET = 7
BPF_OBJ_GET_INFO_BY_FD = 15

# file_flags for BPF_OBJ_GET
BPF_F_RDONLY = 1 << 3

BPF_OBJ_NAME_LEN = 16


# ─────────────────────────────────────────────────────────────────────────────
# Structures (members of union bpf_attr)
# ─────────────────────────────────────────────────────────────────────────────


class ObjGetAttr(Structure):
    """BPF_OBJ_GET attributes."""

    _fields_ = [
        ("pathname", c_uint64),
        ("bpf_fd", c_uint32),
        ("file_flags", c_uint32),
    ]


class MapElemAttr(Structure):
    """BPF_MAP_*_ELEM and BPF_MAP_GET_NEXT_KEY attributes."""

    _fields_ = [
        ("map_fd", c_uint32),
        ("_pad", c_uint32),
        ("key", c_uint64),
        ("value", c_uint64),  # next_key for BPF_MAP_GET_NEXT_KEY
        ("flags", c_uint64),
    ]


class InfoAttr(Structure):
    """BPF_OBJ_GET_INFO_BY_FD attributes."""

    _fields_ = [
        ("bpf_fd", c_uint32),
        ("info_len", c_uint32),
        ("info", c_uint64),
    ]


class BpfMapInfo(Structure):
    """struct bpf_map_info (leading fields, the kernel copies min(len) bytes)."""

    _fields_ = [
        ("type", c_uint32),
        ("id", c_uint32),
        ("key_size", c_uint32),
        ("value_size", c_uint32),
        ("max_entries", c_uint32),
        ("map_flags", c_uint32),
        ("name", c_char * BPF_OBJ_NAME_LEN),
        ("ifindex", c_uint32),
        ("btf_vmlinux_value_type_id", c_uint32),
        ("netns_dev", c_uint64),
        ("netns_ino", c_uint64),
        ("btf_id", c_uint32),
        ("btf_key_type_id", c_uint32),
        ("btf_value_type_id", c_uint32),
        ("_pad", c_uint32),
        ("map_extra", c_uint64),
    ]


@dataclass(frozen=True)
class MapInfo:
    """Metadata of an opened map."""

    name: str
    map_type: int
    key_size: int
    value_size: int
    max_entries: int


# ─────────────────────────────────────────────────────────────────────────────
# Syscall wrappers
# ─────────────────────────────────────────────────────────────────────────────


def _syscall_number() -> int:
    machine = platform.machine()
    try:
        return SYS_BPF[machine]
    except KeyError:
        raise OSError(errno.ENOSYS, f"bpf syscall number unknown for {machine}") from None


def _bpf(cmd: int, attr: Structure) -> int:
    """Issue bpf(cmd, &attr, sizeof(attr)), raising OSError on failure."""
    ret = libc.syscall(c_long(_syscall_number()), c_int(cmd), byref(attr), c_uint(sizeof(attr)))
    if ret < 0:
        err = ctypes.get_errno()
        raise OSError(err, os.strerror(err))
    return ret


def _addr(buf: ctypes.Array) -> int:
    return ctypes.addressof(buf)


def obj_get(path: str, read_only: bool = True) -> int:
    """Open a pinned bpf object and return its file descriptor."""
    pathname = ctypes.create_string_buffer(os.fsencode(path))
    attr = ObjGetAttr(pathname=_addr(pathname), file_flags=BPF_F_RDONLY if read_only else 0)
    try:
        return _bpf(BPF_OBJ_GET, attr)
    except OSError as e:
        raise OSError(e.errno, e.strerror, path) from None


def map_info(fd: int) -> MapInfo:
    """Read map metadata for an open map fd."""
    info = BpfMapInfo()
    attr = InfoAttr(bpf_fd=fd, info_len=sizeof(info), info=ctypes.addressof(info))
    _bpf(BPF_OBJ_GET_INFO_BY_FD, attr)
    return MapInfo(
        name=info.name.decode("utf-8", errors="backslashreplace"),
        map_type=info.type,
        key_size=info.key_size,
        value_size=info.value_size,
        max_entries=info.max_entries,
    )


def iter_map(
    fd: int, key_size: int, value_size: int, max_entries: int
) -> Iterator[tuple[bytes, bytes]]:
    """Yield (key, value) byte pairs over one pass of the map.

    Order is whatever the kernel hands out. Each key is yielded at most once.
    A key removed between the get-next-key and lookup calls is skipped and the
    walk resumes from the last key that was read. If the cursor key itself is
    deleted, the kernel restarts from the first key; keys already yielded are
    then stepped over.

    Raises:
        OSError: EAGAIN once more than max_entries keys had to be skipped or
            revisited, i.e. the map is changing faster than it can be read.
    """
    cursor = ctypes.create_string_buffer(key_size)
    next_key = ctypes.create_string_buffer(key_size)
    value = ctypes.create_string_buffer(value_size)

    have_cursor = False  # False asks the kernel for the first key
    seen: set[bytes] = set()
    retries = 0

    while True:
        attr = MapElemAttr(
            map_fd=fd, key=_addr(cursor) if have_cursor else 0, value=_addr(next_key)
        )
        try:
            _bpf(BPF_MAP_GET_NEXT_KEY, attr)
        except OSError as e:
            if e.errno == errno.ENOENT:
                return
            raise

        candidate = next_key.raw
        if candidate in seen:
            # Cursor was deleted and the kernel started over
            retries += 1
        else:
            lookup = MapElemAttr(map_fd=fd, key=_addr(next_key), value=_addr(value))
            try:
                _bpf(BPF_MAP_LOOKUP_ELEM, lookup)
            except OSError as e:
                if e.errno != errno.ENOENT:
                    raise
                retries += 1
            else:
                seen.add(candidate)
                yield candidate, value.raw

        if retries > max_entries:
            raise OSError(errno.EAGAIN, "map changed too often during iteration")

        # A key deleted before lookup never becomes the cursor
        if candidate in seen:
            ctypes.memmove(cursor, next_key, key_size)
            have_cursor = True
