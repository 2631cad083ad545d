"""
CatRender - catalogue product card rendering.

Resolves per-catalogue product fields, composites product cards with Pillow
and drives crash-safe, resumable batch rendering over (product, catalogue)
pairs.
"""

__version__ = "0.3.0"
