"""Image negation effect."""

from __future__ import annotations

import numpy as np

from camstages.stage import CompletedRequest, PostProcessingStage, register_stage


@register_stage("negate")
class NegateStage(PostProcessingStage):
    """Inverts every byte of the main stream buffer."""

    name = "negate"

    def __init__(self, app=None):
        super().__init__(app)
        self._active = False

    def configure(self) -> None:
        self._active = self.app is not None and self.app.main_stream is not None

    def process(self, request: CompletedRequest) -> bool:
        if not self._active:
            return False
        view = np.frombuffer(request.buffers["main"], dtype=np.uint8)
        np.bitwise_xor(view, 0xFF, out=view)
        return False