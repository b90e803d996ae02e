# smartscan/ocr_backends/base.py
from dataclasses import dataclass, field
from typing import List
from abc import ABC, abstractmethod
import numpy as np

from ..models import OCRWord

# Recognition modes chosen from image metadata
MODE_AUTO = "auto"
MODE_SINGLE_LINE = "single_line"
MODE_SINGLE_WORD = "single_word"
MODE_SPARSE_TEXT = "sparse_text"
MODE_SINGLE_BLOCK = "single_block"


@dataclass
class RecognitionOutput:
    """Raw engine output. `confidence` may be on the engine's native scale."""
    text: str
    confidence: float
    words: List[OCRWord] = field(default_factory=list)


class BaseOCREngine(ABC):
    name = "ocr"

    @abstractmethod
    def recognize(self, image: np.ndarray, mode: str = MODE_AUTO) -> RecognitionOutput:
        """Recognize text in a single preprocessed image."""
        pass

    def close(self) -> None:
        """Release engine resources. Called when the pool evicts the worker."""
        pass
