"""Backing disk resizing.

Callers gate these on VM state; nothing here checks whether the VM is
running.
"""

import asyncio
import os

from machine_stubber._logging import get_logger
from machine_stubber.exceptions import DiskResizeError
from machine_stubber.helper_binaries import find_helper_binary
from machine_stubber.models import VMFile
from machine_stubber.settings import Settings

logger = get_logger(__name__)

_GIB = 1024**3


async def resize_qcow2(new_size_gib: int, disk: VMFile, settings: Settings) -> None:
    """Resize a qcow2 image with qemu-img.

    Raises:
        BinaryNotFoundError: qemu-img not found
        DiskResizeError: qemu-img could not be run or exited non-zero
    """
    qemu_img = find_helper_binary(settings.qemu_img_binary, settings)
    disk_path = disk.get_path()
    args = [str(qemu_img), "resize", str(disk_path), f"{new_size_gib}G"]
    logger.info("Resizing disk image", extra={"disk": str(disk_path), "size_gib": new_size_gib})

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        raise DiskResizeError(
            f"resizing image: {e}",
            context={"disk": str(disk_path), "size_gib": new_size_gib, "cmdline": args},
        ) from e

    if proc.returncode != 0:
        stderr_text = stderr.decode(errors="replace").strip()
        raise DiskResizeError(
            f"resizing image: qemu-img exited with code {proc.returncode}: {stderr_text}",
            context={"disk": str(disk_path), "size_gib": new_size_gib, "cmdline": args},
            stderr=stderr_text,
            returncode=proc.returncode,
        )
    if stdout:
        logger.debug("qemu-img output", extra={"output": stdout.decode(errors="replace").strip()})


async def resize_raw(new_size_gib: int, disk: VMFile) -> None:
    """Grow a raw image by truncating it to the new size.

    Raises:
        DiskResizeError: Image missing or truncate failed
    """
    disk_path = disk.get_path()
    logger.info("Resizing raw disk image", extra={"disk": str(disk_path), "size_gib": new_size_gib})
    try:
        await asyncio.to_thread(os.truncate, disk_path, new_size_gib * _GIB)
    except OSError as e:
        raise DiskResizeError(
            f"resizing image: {e}",
            context={"disk": str(disk_path), "size_gib": new_size_gib},
        ) from e
