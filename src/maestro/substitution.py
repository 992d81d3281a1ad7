"""Expands `${VAR}` placeholders in the files of a container before it starts

Files flagged with `restore_on_exit` are backed up first and put back once the
container stopped. A file that cannot be processed is logged and skipped.
"""

import logging
import re
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Final

import aiofiles
import aiofiles.os
from aiofiles.os import remove
from aiofiles.os import wrap as sync_to_async

from .models.application import SubstitutedFile
from .models.services import EnvironmentMap

_logger = logging.getLogger(__name__)

_PLACEHOLDER_RE: Final[re.Pattern] = re.compile(r"\$\{([A-Za-z0-9_]+)\}")

_shutil_copy2 = sync_to_async(shutil.copy2)


def substitute_placeholders(content: str, env: EnvironmentMap) -> str:
    """Unknown placeholders are left untouched"""

    def _replace(match: re.Match) -> str:
        return env.get(match.group(1), match.group(0))

    return _PLACEHOLDER_RE.sub(_replace, content)


def get_backup_path(restore_dir: Path, path: Path) -> Path:
    # flattened so that files sharing a name in different folders do not collide
    return restore_dir / "__".join(path.resolve().parts[1:])


async def _is_substitutable(path: Path) -> bool:
    return await aiofiles.os.path.exists(path) and not await aiofiles.os.path.isdir(
        path
    )


async def substitute_files(
    files: Sequence[SubstitutedFile], env: EnvironmentMap, *, restore_dir: Path
) -> list[Path]:
    """Returns the paths of the files that were updated"""
    updated: list[Path] = []
    for file in files:
        if not await _is_substitutable(file.path):
            _logger.warning("Skipping %s: not an existing file", file.path)
            continue

        try:
            if file.restore_on_exit:
                await aiofiles.os.makedirs(restore_dir, exist_ok=True)
                await _shutil_copy2(file.path, get_backup_path(restore_dir, file.path))

            async with aiofiles.open(file.path) as f:
                content = await f.read()
            async with aiofiles.open(file.path, mode="w") as f:
                await f.write(substitute_placeholders(content, env))

            updated.append(file.path)
            _logger.info("Updated environment variables in file %s", file.path)

        except OSError as err:
            _logger.error("FAILED to update file %s: %s", file.path, err)  # noqa: TRY400

    return updated


async def restore_files(
    files: Sequence[SubstitutedFile], *, restore_dir: Path
) -> list[Path]:
    """Puts back the backed up originals and deletes the backups"""
    restored: list[Path] = []
    for file in files:
        if not file.restore_on_exit:
            continue

        backup = get_backup_path(restore_dir, file.path)
        if not await aiofiles.os.path.exists(backup):
            continue

        try:
            await _shutil_copy2(backup, file.path)
            await remove(backup)
            restored.append(file.path)
            _logger.info("Restored file %s", file.path)
        except OSError as err:
            _logger.error("FAILED to restore file %s: %s", file.path, err)  # noqa: TRY400

    return restored
