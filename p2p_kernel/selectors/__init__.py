"""Read-only query side."""

from p2p_kernel.selectors.base import BaseSelector

__all__ = ["BaseSelector"]
