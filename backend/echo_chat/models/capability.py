"""Static per-provider capability descriptors."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderCapability:
    supports_streaming: bool
    supports_images: bool
    # Informational only; never enforced
    max_context_note: str
