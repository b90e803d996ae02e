# tests/test_exceptions.py
from smartscan.exceptions import (
    CameraError,
    CapacityExceededError,
    RecognitionTimeout,
    ScanAborted,
    SmartScanError,
    canonical_barcode_error,
    describe_error,
    next_action,
)


def test_error_codes():
    assert ScanAborted().code == "aborted"
    assert RecognitionTimeout("slow").code == "ocr_timeout"
    assert CapacityExceededError().code == "capacity_exceeded"
    assert CameraError("denied", code="camera_permission_denied").code == "camera_permission_denied"
    assert CameraError("gone").code == "camera_not_found"
    assert isinstance(ScanAborted(), SmartScanError)
    assert str(SmartScanError()) == "scan_failed"


def test_barcode_errors_are_canonical():
    assert canonical_barcode_error("timeout") == "barcode_timeout"
    assert canonical_barcode_error("NotAllowed") == "barcode_failed"
    assert canonical_barcode_error("not_allowed") == "camera_permission_denied"
    assert canonical_barcode_error("unsupported_format") == "barcode_unsupported"
    assert canonical_barcode_error(None) == "barcode_failed"
    assert canonical_barcode_error("something odd") == "barcode_failed"


def test_descriptions_and_next_actions():
    assert "timed out" in describe_error("barcode_timeout")
    assert describe_error("timeout") == describe_error("barcode_timeout")
    assert describe_error(None).startswith("Something went wrong")
    assert next_action("ocr_low_confidence") == "manual_correction"
    assert next_action("camera_not_found") == "upload"
    assert next_action("barcode_failed") == "ocr"
    assert next_action("aborted") == "none"
    assert next_action("unheard_of") == "retry"
