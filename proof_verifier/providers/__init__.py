from .base import InferenceBackend
from .nearai import NearaiProvider

__all__ = ["InferenceBackend", "NearaiProvider"]
