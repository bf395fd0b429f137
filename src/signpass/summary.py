"""
Human-readable rendering of verification reports.

The engine returns structured reports; these helpers turn them into short
text for terminals and logs without changing them.
"""

from typing import Any

from .engine import VerificationReport


def report_summary(report: VerificationReport) -> dict[str, Any]:
    """
    Condense a verification report into a flat summary.

    Returns:
        Dict with source, status, signer, files_checked, violation counts
        by code and the signature outcome
    """
    counts: dict[str, int] = {}
    for violation in report.violations:
        counts[violation.code.value] = counts.get(violation.code.value, 0) + 1

    signature = report.signature
    return {
        "source": report.source,
        "status": "accepted" if report.accepted else "rejected",
        "signer": report.signer_identity or "",
        "files_checked": report.files_checked,
        "violations": dict(sorted(counts.items())),
        "signature": (
            "not checked" if signature is None
            else "valid" if signature.accepted
            else f"{signature.code.value if signature.code else 'invalid'}: {signature.reason}"
        ),
    }


def format_report(report: VerificationReport) -> str:
    """
    Format a verification report as multi-line text.

    Example:
        pass.pkpass: REJECTED
          files checked: 2
          signature: valid (CN=Pass Signer)
          DIGEST_MISMATCH b.txt: Digest mismatch for b.txt
    """
    s = report_summary(report)
    lines = [f"{s['source']}: {s['status'].upper()}", f"  files checked: {s['files_checked']}"]

    if report.signature is not None and report.signature.accepted:
        lines.append(f"  signature: valid ({s['signer']})")
    else:
        lines.append(f"  signature: {s['signature']}")

    for violation in report.violations:
        where = f" {violation.path}" if violation.path else ""
        lines.append(f"  {violation.code.value}{where}: {violation.message}")

    return "\n".join(lines)
