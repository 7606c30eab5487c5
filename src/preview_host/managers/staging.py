"""Preparing project directories on disk: template copy, file writes, cleanup."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import structlog

from preview_host.validation import resolve_inside

logger = structlog.get_logger()

# Never carried over from a template; rebuilt per project
TEMPLATE_EXCLUDES = (".git", "node_modules", ".next", ".turbo", "dist", "build")

FOREIGN_LOCKFILES = ("pnpm-lock.yaml",)

MANIFEST_FILE = "package.json"
SOURCE_DIR = "src"


class ProjectStaging:
    """Owns the previews root and everything written beneath it."""

    def __init__(
        self,
        previews_root: Path,
        *,
        remove_attempts: int = 3,
        remove_backoff: float = 1.0,
    ) -> None:
        self.previews_root = previews_root
        self._remove_attempts = remove_attempts
        self._remove_backoff = remove_backoff

    def directory_for(self, name: str) -> Path:
        return self.previews_root / name

    def is_intact(self, directory: Path) -> bool:
        """A staged project has a manifest and a source tree."""
        return (directory / MANIFEST_FILE).exists() and (directory / SOURCE_DIR).exists()

    async def copy_template(self, template: Path, destination: Path) -> None:
        """Copy a template into ``destination``, skipping build output and caches."""
        logger.info("Copying template", template=str(template), destination=str(destination))
        await asyncio.to_thread(self._copy_template_sync, template, destination)

    @staticmethod
    def _copy_template_sync(template: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            template,
            destination,
            ignore=shutil.ignore_patterns(*TEMPLATE_EXCLUDES),
            symlinks=True,
            dirs_exist_ok=True,
        )
        for name in TEMPLATE_EXCLUDES:
            leftover = destination / name
            if leftover.is_dir():
                shutil.rmtree(leftover, ignore_errors=True)

    async def write_files(self, directory: Path, files: dict[str, str]) -> None:
        """Write each file under ``directory``, creating parent directories.

        Paths escaping the directory are rejected with ``ValidationError``
        before anything is written.
        """
        if not files:
            return
        targets = [(resolve_inside(directory, path), content) for path, content in files.items()]
        await asyncio.to_thread(self._write_files_sync, targets)
        logger.debug("Wrote project files", directory=str(directory), count=len(targets))

    @staticmethod
    def _write_files_sync(targets: list[tuple[Path, str]]) -> None:
        for target, content in targets:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    async def remove_directory(self, directory: Path) -> bool:
        """Remove a directory tree, retrying with linear backoff.

        Returns False when every attempt failed; the caller carries on and
        overwrites files in place.
        """
        if not directory.exists():
            return True
        for attempt in range(1, self._remove_attempts + 1):
            try:
                await asyncio.to_thread(shutil.rmtree, directory)
            except FileNotFoundError:
                return True
            except OSError as e:
                logger.warning(
                    "Directory removal failed",
                    directory=str(directory),
                    attempt=attempt,
                    attempts=self._remove_attempts,
                    error=str(e),
                )
                if attempt < self._remove_attempts:
                    await asyncio.sleep(self._remove_backoff * attempt)
            else:
                return True
        logger.warning("Could not remove directory, files will be overwritten", directory=str(directory))
        return False

    async def remove_foreign_lockfiles(self, directory: Path) -> None:
        """Drop lockfiles from other package managers so npm resolves fresh."""
        for name in FOREIGN_LOCKFILES:
            lockfile = directory / name
            if lockfile.exists():
                await asyncio.to_thread(lockfile.unlink, missing_ok=True)
                logger.debug("Removed lockfile", path=str(lockfile))

    async def stage(self, template: Path, directory: Path, files: dict[str, str]) -> None:
        """Template copy followed by the submitted files."""
        await self.copy_template(template, directory)
        await self.write_files(directory, files)
