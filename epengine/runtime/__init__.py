"""Runtime state: per-edge refinement buffers."""

from epengine.runtime.buffers import BufferStore, RefinementBuffer

__all__ = ["BufferStore", "RefinementBuffer"]
