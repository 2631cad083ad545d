"""
Filesystem bridge - namespaced file access for source images and rendered
artifacts.

    Namespace.DATA      app-private storage (source images)
    Namespace.EXTERNAL  user-visible storage (rendered cards, share bundles)

Writes are whole-file replace: data goes to a temp file in the target
directory, is fsynced, then os.replace()d over the destination, so readers
never observe a partially written file.
"""

import enum
import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from catrender.errors import StorageError, StorageQuotaExceeded

logger = logging.getLogger(__name__)

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class Namespace(enum.Enum):
    DATA = "data"
    EXTERNAL = "external"


def _raise_storage_error(action: str, path: Path, err: OSError):
    if err.errno in _QUOTA_ERRNOS:
        raise StorageQuotaExceeded(f"Out of space {action} {path}: {err}") from err
    raise StorageError(f"Failed {action} {path}: {err}") from err


class FileSystemBridge:
    """Namespaced file access rooted at one base directory."""

    def __init__(self, root: Optional[Path] = None):
        if root is None:
            from catrender.utils.config import get_config
            root = get_config().data_dir() / "files"
        self.root = Path(root)
        for ns in Namespace:
            (self.root / ns.value).mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str, namespace: Namespace = Namespace.DATA) -> Path:
        """Absolute path of `path` inside namespace; rejects escapes."""
        base = (self.root / namespace.value).resolve()
        full = (base / path).resolve()
        if full != base and base not in full.parents:
            raise StorageError(f"Path escapes {namespace.value} namespace: {path}")
        return full

    def write_file(self, path: str, data: bytes, namespace: Namespace = Namespace.DATA) -> Path:
        target = self.resolve(path, namespace)
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp",
                                            dir=str(target.parent))
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as e:
            _raise_storage_error("writing", target, e)
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        return target

    def read_file(self, path: str, namespace: Namespace = Namespace.DATA) -> Optional[bytes]:
        """File bytes, or None if the file does not exist."""
        target = self.resolve(path, namespace)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            _raise_storage_error("reading", target, e)

    def exists(self, path: str, namespace: Namespace = Namespace.DATA) -> bool:
        return self.resolve(path, namespace).is_file()

    def list_dir(self, path: str = "", namespace: Namespace = Namespace.DATA) -> List[str]:
        """Names of visible entries in a directory; [] if it does not exist."""
        target = self.resolve(path, namespace)
        if not target.is_dir():
            return []
        return sorted(p.name for p in target.iterdir() if not p.name.startswith("."))

    def delete_file(self, path: str, namespace: Namespace = Namespace.DATA) -> bool:
        target = self.resolve(path, namespace)
        try:
            target.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            _raise_storage_error("deleting", target, e)

    def rename_dir(self, old: str, new: str, namespace: Namespace = Namespace.EXTERNAL) -> bool:
        """Move a directory; merges into `new` if it already exists."""
        src = self.resolve(old, namespace)
        dst = self.resolve(new, namespace)
        if not src.is_dir():
            return False
        try:
            if not dst.exists():
                os.replace(src, dst)
                return True
            for entry in src.iterdir():
                os.replace(entry, dst / entry.name)
            shutil.rmtree(src, ignore_errors=True)
        except OSError as e:
            _raise_storage_error("renaming", src, e)
        return True
