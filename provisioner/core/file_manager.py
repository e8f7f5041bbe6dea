"""
File system management for the provisioner.
Handles template rendering and the files the sequence installs.
"""

import os
import shlex
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .logger import StepLogger

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


class FileManager:
    """Manages file system operations for the provisioning steps."""

    def __init__(self, base_dir: Path = None, logger: StepLogger = None, template_dir: Path = None):
        self.base_dir = base_dir or Path.cwd()
        self.logger = logger or StepLogger("FileManager")

        # Undefined template variables are errors, not empty strings
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATES_DIR)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self.jinja_env.filters["shell_quote"] = lambda value: shlex.quote(str(value))

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        """Render a packaged template with context."""
        template = self.jinja_env.get_template(template_name)
        return template.render(**context)

    async def read_file(self, path: Path) -> str:
        """Read file contents asynchronously."""
        full_path = self._resolve_path(path)
        try:
            async with aiofiles.open(full_path, 'r') as f:
                return await f.read()
        except Exception as e:
            self.logger.error(f"Failed to read {full_path}: {e}")
            raise

    async def read_optional(self, path: Path) -> Optional[str]:
        """Read a file, or None if it does not exist."""
        full_path = self._resolve_path(path)
        if not await aiofiles.os.path.isfile(full_path):
            return None
        return await self.read_file(full_path)

    async def write_file(
        self,
        path: Path,
        content: str,
        create_dirs: bool = True,
        mode: Optional[int] = None,
    ) -> None:
        """Write content to a file asynchronously, replacing it atomically."""
        full_path = self._resolve_path(path)
        tmp_path = full_path.with_name(f".{full_path.name}.tmp")
        try:
            if create_dirs:
                await aiofiles.os.makedirs(full_path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, 'w') as f:
                await f.write(content)
            if mode is not None:
                os.chmod(tmp_path, mode)
            await aiofiles.os.replace(tmp_path, full_path)
            self.logger.debug(f"Written to {full_path}")
        except Exception as e:
            self.logger.error(f"Failed to write {full_path}: {e}")
            raise

    async def delete_file(self, path: Path) -> bool:
        """Delete a file if present. Returns True if something was removed."""
        full_path = self._resolve_path(path)
        if not await aiofiles.os.path.exists(full_path):
            return False
        try:
            await aiofiles.os.remove(full_path)
            self.logger.debug(f"Deleted {full_path}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to delete {full_path}: {e}")
            raise

    async def restore_file(self, path: Path, previous: Optional[str]) -> None:
        """Put a file back to its previous content, or remove it if it did not exist."""
        if previous is None:
            await self.delete_file(path)
        else:
            await self.write_file(path, previous)

    async def exists(self, path: Path) -> bool:
        """Check if a path exists."""
        full_path = self._resolve_path(path)
        return await aiofiles.os.path.exists(full_path)

    async def is_dir(self, path: Path) -> bool:
        """Check if path is a directory."""
        full_path = self._resolve_path(path)
        return await aiofiles.os.path.isdir(full_path)

    async def create_directory(self, path: Path) -> None:
        """Create a directory and its parents."""
        full_path = self._resolve_path(path)
        await aiofiles.os.makedirs(full_path, exist_ok=True)
        self.logger.debug(f"Created directory {full_path}")

    async def remove_tree(self, path: Path) -> bool:
        """Remove a directory tree if present. Returns True if something was removed."""
        full_path = self._resolve_path(path)
        if not os.path.lexists(full_path):
            return False
        if full_path.is_dir() and not full_path.is_symlink():
            shutil.rmtree(full_path)
        else:
            full_path.unlink()
        self.logger.debug(f"Removed {full_path}")
        return True

    def list_dir(self, path: Path) -> str:
        """``ls -la``-style listing of a directory, for diagnostics."""
        full_path = self._resolve_path(path)
        lines: List[str] = [f"{full_path}:"]
        try:
            entries = sorted(full_path.iterdir(), key=lambda p: p.name)
        except OSError as e:
            return f"{full_path}: {e}"

        for entry in entries:
            try:
                st = entry.lstat()
            except OSError:
                continue
            kind = "d" if entry.is_dir() else ("l" if entry.is_symlink() else "-")
            lines.append(f"{kind}{oct(st.st_mode & 0o777)[2:]:>4} {st.st_size:>10}  {entry.name}")
        return "\n".join(lines)

    def ensure_mode(self, path: Path, mode: int) -> bool:
        """Set permission bits on one path if they differ. Returns True if changed."""
        full_path = self._resolve_path(path)
        current = full_path.stat().st_mode & 0o7777
        if current == mode:
            return False
        os.chmod(full_path, mode)
        return True

    def ensure_mode_recursive(self, path: Path, mode: int) -> int:
        """Apply permission bits to a tree, like ``chmod -R``. Returns the number changed."""
        full_path = self._resolve_path(path)
        changed = int(self.ensure_mode(full_path, mode))
        for root, dirs, files in os.walk(full_path):
            for name in dirs + files:
                entry = Path(root) / name
                if entry.is_symlink():
                    continue
                changed += int(self.ensure_mode(entry, mode))
        return changed

    def _resolve_path(self, path: Path) -> Path:
        """Resolve a path relative to base_dir if not absolute."""
        if path is None:
            return self.base_dir
        path = Path(path) if isinstance(path, str) else path
        if path.is_absolute():
            return path
        return self.base_dir / path
