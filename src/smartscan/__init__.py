# src/smartscan/__init__.py
from .config import ScanConfig
from .exceptions import CapacityExceededError, ScanAborted, SmartScanError
from .models import BarcodeResult, OCRResult, OCRWord
from .orchestrator import SmartScanOrchestrator
from .state import ProgressBands, ScanSession, Step, reduce

__version__ = "0.1.0"

__all__ = [
    "ScanConfig",
    "SmartScanOrchestrator",
    "ScanSession",
    "Step",
    "ProgressBands",
    "reduce",
    "BarcodeResult",
    "OCRResult",
    "OCRWord",
    "SmartScanError",
    "ScanAborted",
    "CapacityExceededError",
]
