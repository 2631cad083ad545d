"""Product card compositing."""

from .compositor import ArtifactRef, ImageCompositor, LayoutOptions, WatermarkConfig

__all__ = ['ArtifactRef', 'ImageCompositor', 'LayoutOptions', 'WatermarkConfig']
