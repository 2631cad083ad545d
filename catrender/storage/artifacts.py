"""
Artifact store - rendered product cards in the external namespace.

Each (product, catalogue) pair maps to exactly one deterministic path derived
from the catalogue folder and the product id, so a re-render overwrites the
previous card in place.
"""

import logging
import threading
from typing import Iterable, List, Optional

from catrender.catalogue.schema import Catalogue
from catrender.storage.filesystem import FileSystemBridge, Namespace

logger = logging.getLogger(__name__)


def artifact_filename(folder: str, product_id: str) -> str:
    return f"product_{product_id}_{folder}.png"


def artifact_path(folder: str, product_id: str) -> str:
    return f"{folder}/{artifact_filename(folder, product_id)}"


class ArtifactStore:
    def __init__(self, fs: FileSystemBridge):
        self.fs = fs
        self._rename_threads: List[threading.Thread] = []

    def path_for(self, catalogue: Catalogue, product_id: str) -> str:
        return artifact_path(catalogue.folder, product_id)

    def save(self, catalogue: Catalogue, product_id: str, png_bytes: bytes) -> str:
        path = self.path_for(catalogue, product_id)
        self.fs.write_file(path, png_bytes, Namespace.EXTERNAL)
        return path

    def read(self, catalogue: Catalogue, product_id: str) -> Optional[bytes]:
        return self.fs.read_file(self.path_for(catalogue, product_id), Namespace.EXTERNAL)

    def exists(self, catalogue: Catalogue, product_id: str) -> bool:
        return self.fs.exists(self.path_for(catalogue, product_id), Namespace.EXTERNAL)

    def list_folder(self, folder: str) -> List[str]:
        return self.fs.list_dir(folder, Namespace.EXTERNAL)

    def delete_for_product(self, product_id: str, catalogues: Iterable[Catalogue]) -> int:
        removed = 0
        for catalogue in catalogues:
            if self.fs.delete_file(self.path_for(catalogue, product_id), Namespace.EXTERNAL):
                removed += 1
        return removed

    # ── Folder rename (catalogue renamed) ───────────────

    def rename_folder(self, old_folder: str, new_folder: str) -> int:
        """Move the folder and rename every card to the new folder's naming.

        Returns the number of cards renamed.
        """
        if old_folder == new_folder:
            return 0
        if not self.fs.rename_dir(old_folder, new_folder, Namespace.EXTERNAL):
            logger.info(f"[RENAME] nothing rendered under '{old_folder}'")
            return 0

        renamed = 0
        old_suffix = f"_{old_folder}.png"
        for name in self.fs.list_dir(new_folder, Namespace.EXTERNAL):
            if not (name.startswith("product_") and name.endswith(old_suffix)):
                continue
            product_id = name[len("product_"):-len(old_suffix)]
            src = self.fs.resolve(f"{new_folder}/{name}", Namespace.EXTERNAL)
            dst = self.fs.resolve(artifact_path(new_folder, product_id), Namespace.EXTERNAL)
            src.replace(dst)
            renamed += 1
        logger.info(f"[RENAME] '{old_folder}' -> '{new_folder}': {renamed} cards")
        return renamed

    def rename_folder_async(self, old_folder: str, new_folder: str) -> threading.Thread:
        """Run rename_folder on a background thread; the caller may join() it."""

        def _run():
            try:
                self.rename_folder(old_folder, new_folder)
            except Exception as e:
                logger.error(f"[RENAME] '{old_folder}' -> '{new_folder}' failed: {e}")

        thread = threading.Thread(target=_run, name=f"ArtifactRename-{new_folder}", daemon=True)
        self._rename_threads.append(thread)
        thread.start()
        return thread

    def wait_for_renames(self, timeout: Optional[float] = None) -> None:
        for thread in list(self._rename_threads):
            thread.join(timeout=timeout)
        self._rename_threads = [t for t in self._rename_threads if t.is_alive()]
