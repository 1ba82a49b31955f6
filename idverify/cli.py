"""Command-line verification run: ID card image + selfie (file or camera)."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from idverify.models.face_pipeline import ModelLoadError, load_image
from idverify.models.field_extractor import FieldExtractor
from idverify.models.text_recognizer import (
    DocumentReader,
    OcrEngineUnavailable,
    TextRecognizer,
    TextRecognizerConfig,
)
from idverify.services.camera import CameraAccessError, CameraSession, CameraUnsupportedError
from idverify.services.report import render_report
from idverify.services.verification_service import TransitionError, VerificationSession

EXIT_VERIFIED = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idverify",
        description="Match an ID card photo against a selfie and check the holder's age")
    parser.add_argument("document", help="Path to the ID card image (JPEG/PNG)")
    selfie = parser.add_mutually_exclusive_group(required=True)
    selfie.add_argument("--selfie", help="Path to a selfie image")
    selfie.add_argument("--camera", type=int, metavar="INDEX",
                        help="Capture the selfie from this camera device")
    parser.add_argument("--name", help="Full name, overrides the OCR result")
    parser.add_argument("--dob", help="Date of birth DD/MM/YYYY, overrides the OCR result")
    parser.add_argument("--ocr-engine", choices=["tesseract", "easyocr"], default=None,
                        help="OCR engine (default: $OCR_ENGINE or tesseract)")
    parser.add_argument("--no-reference-corpus", action="store_true",
                        help="Do not short-cut on the sample-card reference values")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def _print_progress(value: float) -> None:
    print(f"\r  OCR progress: {round(value * 100):3d}%", end="", file=sys.stderr, flush=True)
    if value >= 1.0:
        print(file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    cfg = TextRecognizerConfig()
    if args.ocr_engine:
        cfg.engine = args.ocr_engine
    recognizer = TextRecognizer(cfg)
    recognizer.check_engine()

    reader = DocumentReader(
        engine=recognizer,
        extractor=FieldExtractor(use_reference_corpus=not args.no_reference_corpus),
        cfg=cfg,
    )
    session = VerificationSession(reader=reader)
    await session.face_locator.ensure_ready()

    print(f"Processing: {args.document}", file=sys.stderr)
    doc = await session.upload_document(args.document, on_progress=_print_progress)
    if not doc.full_name or doc.date_of_birth is None:
        print("  OCR could not read every field; use --name / --dob to fill them in.",
              file=sys.stderr)
    if args.name or args.dob:
        session.set_document_data(full_name=args.name, date_of_birth=args.dob)
    session.begin_selfie()

    if args.selfie:
        await session.submit_selfie(load_image(args.selfie))
    else:
        with CameraSession(args.camera) as camera:
            await session.capture_selfie(camera)

    result = await session.compare()
    print(render_report(session))
    return EXIT_VERIFIED if result.verified else EXIT_REJECTED


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(args))
    except TransitionError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
    except (ModelLoadError, OcrEngineUnavailable) as exc:
        print(f"FAILED: {exc}", file=sys.stderr)
    except (CameraAccessError, CameraUnsupportedError) as exc:
        print(f"CAMERA: {exc}", file=sys.stderr)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
