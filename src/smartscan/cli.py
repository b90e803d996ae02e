# src/smartscan/cli.py
from __future__ import annotations

import argparse
import ast
import asyncio
import json
import logging
import queue
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from .config import BARCODE_ENGINES, ScanConfig, normalize_backend_alias
from .exceptions import describe_error, next_action
from .formats import CANONICAL_FORMATS
from .logger import configure_logging, setup_logging
from .orchestrator import SmartScanOrchestrator
from .sources import is_supported_file
from .utils import import_obj

__all__ = ["collect_sources", "run_scan", "main"]

logger = logging.getLogger("smartscan")


# Helpers

def _parse_backend_kwargs(val) -> dict:
    """
    Accept several syntaxes for --ocr-backend-kwargs:
      1) JSON                                      {"oem":1,"char_whitelist":"0123456789"}
      2) Python-literal dict with single quotes    {'gpu': False}
      3) key=value pairs separated by ;            oem=1;gpu=false
    """
    if isinstance(val, dict):
        return dict(val)
    if not isinstance(val, str) or not val.strip():
        return {}

    s = val.strip()
    if len(s) >= 2 and s[0] in ("'", '"') and s[-1] == s[0]:
        s = s[1:-1].strip()

    try:
        parsed = json.loads(s)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    try:
        lit = ast.literal_eval(s)
        if isinstance(lit, dict):
            return lit
    except (ValueError, SyntaxError):
        pass

    out: Dict[str, Any] = {}
    for part in re.split(r";\s*", s):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        k = k.strip().strip("\"'").lower().replace("-", "_")
        v = v.strip().strip("\"'")
        low = v.lower()
        if low in ("true", "false"):
            out[k] = low == "true"
        elif re.fullmatch(r"-?\d+", v):
            out[k] = int(v)
        elif re.fullmatch(r"-?\d+\.\d*", v):
            out[k] = float(v)
        elif "," in v:
            out[k] = [x.strip() for x in v.split(",") if x.strip()]
        else:
            out[k] = v

    if out:
        return out
    raise SystemExit(f"Invalid --ocr-backend-kwargs. Could not parse: {val!r}")


def _preflight_backend_import(dotted: str) -> None:
    """Import the backend class up front so a typo fails before any file is scanned."""
    try:
        import_obj(dotted)
    except Exception as e:
        raise SystemExit(
            f"Cannot load OCR backend {dotted!r} ({e})\n"
            f"- Tesseract: smartscan.ocr_backends.tesseract_backend.TesseractOCREngine (alias: tess)\n"
            f"- EasyOCR:   smartscan.ocr_backends.easyocr_backend.EasyOCREngine (alias: easyocr)"
        )


def _normalize_output_path(arg: Path) -> Path:
    """
    Accept both files and directories for --output-path.
    A directory gets a timestamped .jsonl inside it; a name without suffix gets .jsonl.
    """
    out = Path(arg)
    if out.exists() and out.is_dir():
        out = out / f"smartscan_{datetime.now():%Y%m%d_%H%M%S}.jsonl"
    elif out.suffix == "":
        out = out.with_suffix(".jsonl")

    out.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(out, "a", encoding="utf-8"):
            pass
    except OSError as e:
        raise SystemExit(f"--output-path is not writable: {out} ({e})")
    return out


def collect_sources(input_path: Path) -> List[Path]:
    """A single supported file, or every supported file under a directory."""
    if not input_path.exists():
        logger.error("Input path does not exist, %s", input_path)
        return []
    if input_path.is_file():
        return [input_path] if is_supported_file(input_path) else []
    files = sorted(p for p in input_path.rglob("*") if p.is_file() and is_supported_file(p))
    logger.info("Selected %d files under %s", len(files), input_path)
    return files


def _config_from_args(args: argparse.Namespace) -> ScanConfig:
    overrides: Dict[str, Any] = {
        "barcode_engine": args.engine,
        "barcode_formats": args.formats,
        "force_ocr": args.force_ocr or None,
        "language": args.language,
        "confidence_threshold": args.confidence_threshold,
        "error_log_path": str(args.error_log_path) if args.error_log_path else None,
    }
    if getattr(args, "ocr_backend", None):
        overrides["ocr_backend"] = normalize_backend_alias(args.ocr_backend)
        _preflight_backend_import(overrides["ocr_backend"])
    if getattr(args, "ocr_backend_kwargs", None):
        overrides["ocr_backend_kwargs"] = _parse_backend_kwargs(args.ocr_backend_kwargs)
    if getattr(args, "timeout_ms", None):
        key = "barcode_timeout_ms" if args.command == "camera" else "ocr_timeout_ms"
        overrides[key] = args.timeout_ms
    return ScanConfig.from_env(**overrides)


def _summary(record: Dict[str, Any]) -> Dict[str, Any]:
    code = record.get("error_code")
    if code and record.get("step") != "done":
        record["error_description"] = describe_error(code)
        record["next_action"] = next_action(code)
    return record


# -------------------------------
# Runs
# -------------------------------

async def run_scan(config: ScanConfig, files: List[Path], output_path: Path) -> int:
    """Scan every file in turn and append one JSON line per file. Returns the number of failures."""
    failures = 0
    with ThreadPoolExecutor(max_workers=config.max_concurrent + 2, thread_name_prefix="smartscan") as executor:
        orchestrator = SmartScanOrchestrator.from_config(config, executor=executor)
        try:
            with open(output_path, "a", encoding="utf-8") as out:
                for path in tqdm(files, desc="Scanning", unit="file"):
                    state = await orchestrator.run_image_scan(path)
                    record = _summary({"source_path": str(path), **state.to_dict()})
                    record["metrics"] = orchestrator.snapshot().to_dict()
                    out.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
                    if state.step.value != "done":
                        failures += 1
            logger.info("Worker pool, %s", orchestrator.pool.stats())
        finally:
            await orchestrator.aclose()
    return failures


async def run_camera(config: ScanConfig, device: int) -> Dict[str, Any]:
    with ThreadPoolExecutor(max_workers=config.max_concurrent + 2, thread_name_prefix="smartscan") as executor:
        orchestrator = SmartScanOrchestrator.from_config(config, executor=executor)
        try:
            state = await orchestrator.start_camera_scan(device=device)
            record = _summary(state.to_dict())
            record["metrics"] = orchestrator.snapshot().to_dict()
            logger.info("Worker pool, %s", orchestrator.pool.stats())
            return record
        finally:
            await orchestrator.aclose()


# -------------------------------
# CLI parsing
# -------------------------------

def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--engine", choices=["auto", *BARCODE_ENGINES], help="Barcode engine strategy (default: auto)")
    p.add_argument("--formats", help="Comma separated barcode formats, e.g. EAN13,UPC")
    p.add_argument("--force-ocr", action="store_true", help="Run OCR even when a barcode is found")
    p.add_argument("--ocr-backend", help="OCR backend alias (tess, easyocr) or dotted 'module.Class' path")
    p.add_argument(
        "--ocr-backend-kwargs",
        help=('Backend init kwargs as JSON or key=value pairs, e.g. '
              '\'{"oem":1}\'  or  oem=1;preserve_interword_spaces=true'),
    )
    p.add_argument("-l", "--language", help="OCR language code (default: eng)")
    p.add_argument("--timeout-ms", type=int, help="Stage timeout in milliseconds")
    p.add_argument("--confidence-threshold", type=float, help="Minimum OCR confidence to auto-accept (0-1)")
    p.add_argument("--error-log-path", type=Path, help="Path to save the error log JSONL file")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="smartscan, barcode first label scanning with OCR fallback")
    subparsers = parser.add_subparsers(dest="command")

    sp = subparsers.add_parser("scan", help="Scan image or PDF files")
    sp.add_argument("-i", "--input", type=Path, required=True, help="A file or a directory of files to scan")
    sp.add_argument(
        "-o", "--output-path", type=Path, required=True,
        help="Output results path. Accepts a .jsonl file OR a directory (a timestamped .jsonl is created inside).",
    )
    _add_common_arguments(sp)

    cp = subparsers.add_parser("camera", help="Scan live from a camera")
    cp.add_argument("--device", type=int, default=0, help="Camera index (default: 0)")
    _add_common_arguments(cp)

    subparsers.add_parser("formats", help="List supported barcode formats and engines")
    return parser.parse_args(argv)


# -------------------------------
# Entry points
# -------------------------------

def _with_logging(args: argparse.Namespace, run):
    log_queue: queue.Queue = queue.Queue(-1)
    listener = setup_logging(
        log_queue,
        level=logging.DEBUG if args.verbose else logging.INFO,
        file_path=getattr(args, "log_file", None),
    )
    configure_logging(log_queue, level=logging.DEBUG if args.verbose else logging.INFO)
    listener.start()
    try:
        return run()
    finally:
        listener.stop()


def main(argv: Optional[List[str]] = None):
    args = _parse_args(argv)

    if args.command == "formats":
        print("Formats: " + ", ".join(CANONICAL_FORMATS))
        print("Engines: " + ", ".join(BARCODE_ENGINES))
        return

    if args.command == "scan":
        args.output_path = _normalize_output_path(args.output_path)
        args.log_file = args.output_path.with_suffix(".log")

        def run():
            config = _config_from_args(args)
            files = collect_sources(args.input)
            if not files:
                logger.info("No supported files to scan")
                return 0
            logger.info("Scanning %d files, results in %s", len(files), args.output_path)
            return asyncio.run(run_scan(config, files, args.output_path))

        failures = _with_logging(args, run)
        sys.exit(1 if failures else 0)

    if args.command == "camera":
        def run():
            config = _config_from_args(args)
            return asyncio.run(run_camera(config, args.device))

        try:
            record = _with_logging(args, run)
        except KeyboardInterrupt:
            sys.exit(130)
        print(json.dumps(record, ensure_ascii=False, indent=2, default=str))
        sys.exit(0 if record.get("step") == "done" else 1)

    print("Usage:\n  smartscan scan -i <file|dir> -o <results.jsonl> [options]\n"
          "  smartscan camera [--device 0]\n  smartscan formats")
    sys.exit(2)


if __name__ == "__main__":
    main()
