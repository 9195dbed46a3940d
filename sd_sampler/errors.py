# sd_sampler/errors.py
"""
Exception types raised by the sampler.

Attention shape problems are programming errors and derive from
ValueError. Everything that can go wrong while downloading, loading,
sampling or saving derives from SamplerError so the CLI can report it.
"""


class AttentionShapeError(ValueError):
    """Query/key/value/mask shapes are not compatible."""


class HeadCountError(AttentionShapeError):
    """The embedding dimension cannot be split evenly into heads."""

    def __init__(self, embedding_dim: int, n_head: int):
        self.embedding_dim = embedding_dim
        self.n_head = n_head
        super().__init__(
            f"embedding dim {embedding_dim} is not divisible by n_head={n_head}"
        )


class SamplerError(Exception):
    """Base class for pipeline failures."""


class GuidanceShapeError(SamplerError):
    """Conditional and unconditional predictions disagree."""


class DownloadError(SamplerError):
    pass


class ModelLoadError(SamplerError):
    pass


class ImageSaveError(SamplerError):
    pass
