"""
Share packaging - bundles a catalogue's rendered cards into one zip in the
external namespace.

Phases published on the channel:
    rendering            missing cards are rendered through the controller
    packaging-for-share  the zip is being written
"""

import io
import logging
import time
import zipfile
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from catrender.errors import BatchError
from catrender.pipeline.events import Phase, PhaseChangeEvent
from catrender.pipeline.state import BatchState
from catrender.storage.artifacts import artifact_filename
from catrender.storage.filesystem import Namespace

logger = logging.getLogger(__name__)

SHARE_FOLDER = "Share"


@dataclass
class ShareBundle:
    path: str
    artifacts: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


class SharePackager:
    def __init__(self, controller, registry, artifacts, fs, channel=None):
        self.controller = controller
        self.registry = registry
        self.artifacts = artifacts
        self.fs = fs
        self.channel = channel or controller.channel

    def package(self, product_ids: Sequence[str], catalogue_id: str,
                timeout: Optional[float] = None) -> ShareBundle:
        """Render what is missing, then zip the catalogue's cards for product_ids.

        Products whose card still cannot be rendered (no image, ...) are listed
        in ShareBundle.missing.
        """
        catalogue = self.registry.get(catalogue_id)

        to_render = [pid for pid in product_ids if not self.artifacts.exists(catalogue, pid)]
        if to_render:
            logger.info(f"[SHARE] rendering {len(to_render)} missing cards for {catalogue.folder}")
            self.controller.start(to_render, [catalogue_id])
            result = self.controller.wait(timeout)
            if result is None:
                raise BatchError("Rendering for share timed out")
            if result.state != BatchState.COMPLETED:
                raise result.error or BatchError(f"Rendering for share {result.state.value}")

        self.channel.publish(PhaseChangeEvent(Phase.PACKAGING))
        included, missing = [], []
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as zf:
            for pid in product_ids:
                data = self.artifacts.read(catalogue, pid)
                if data is None:
                    missing.append(pid)
                    continue
                name = artifact_filename(catalogue.folder, pid)
                zf.writestr(name, data)
                included.append(name)

        stamp = time.strftime("%Y%m%d_%H%M%S")
        path = f"{SHARE_FOLDER}/{catalogue.folder}_{stamp}.zip"
        try:
            self.fs.write_file(path, buffer.getvalue(), Namespace.EXTERNAL)
        finally:
            self.channel.publish(PhaseChangeEvent(Phase.IDLE))
        logger.info(f"[SHARE] {path}: {len(included)} cards, {len(missing)} missing")
        return ShareBundle(path=path, artifacts=included, missing=missing)
