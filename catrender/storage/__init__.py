"""Namespaced filesystem access and rendered artifact storage."""

from .filesystem import FileSystemBridge, Namespace
from .artifacts import ArtifactStore

__all__ = ['FileSystemBridge', 'Namespace', 'ArtifactStore']
