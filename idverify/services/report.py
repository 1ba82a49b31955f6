"""Plain-text summary of a finished verification session."""

from __future__ import annotations

from typing import List

from idverify.models.records import COMPARISON_VISUAL
from idverify.services.verification_service import VerificationSession


def render_report(session: VerificationSession) -> str:
    sep = "=" * 60
    lines: List[str] = [sep, "  IDENTITY VERIFICATION REPORT", sep]

    doc = session.document
    if doc is not None:
        lines.append(f"  Full name:       {doc.full_name or '-'}")
        if doc.devanagari_name:
            lines.append(f"  Devanagari name: {doc.devanagari_name}")
        if doc.latin_name:
            lines.append(f"  Latin name:      {doc.latin_name}")
        dob = doc.date_of_birth.strftime("%d/%m/%Y") if doc.date_of_birth else "-"
        lines.append(f"  Date of birth:   {dob}")
        if doc.document_number:
            lines.append(f"  Document number: {doc.document_number}")
        lines.append(f"  Card face:       {'detected' if doc.face_detected else 'region estimate'}")

    if session.selfie is not None:
        detected = session.selfie.face_detected
        lines.append(f"  Selfie face:     {'detected' if detected else 'full frame'}")

    result = session.result
    if result is None:
        lines.append(f"  Status:          {session.state.value}")
    else:
        lines.append(f"  Age:             {result.age}")
        lines.append(f"  Face match:      {result.similarity}% ({result.comparison_method})")
        if result.distance is not None:
            lines.append(f"  Distance:        {result.distance:.4f}")
        lines.append(f"  Result:          {'VERIFIED' if result.verified else 'REJECTED'}")
        for reason in result.reasons:
            lines.append(f"    - {reason}")
        if result.comparison_method == COMPARISON_VISUAL:
            lines.append("  NOTE: no face descriptor on one side; the score is a visual")
            lines.append("        estimate and the result needs manual review.")

    lines.append(sep)
    return "\n".join(lines)
