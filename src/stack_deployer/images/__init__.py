"""Container image build controller."""

from .builder import ImageBuilder, ImageSpec

__all__ = ["ImageBuilder", "ImageSpec"]
