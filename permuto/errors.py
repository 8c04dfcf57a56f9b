"""Exceptions raised by the permutohedral encoder before any work is done."""


class ConfigError(ValueError):
    """Malformed encoding configuration (level lists, dimension, widths)."""


class ShapeError(ValueError):
    """Array shapes inconsistent with the encoding meta."""


class DeviceError(RuntimeError):
    """Tensors on mismatched devices or with mismatched precision."""
