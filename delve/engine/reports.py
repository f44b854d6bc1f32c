"""Local report building — synthesis input filtering and no-LLM fallbacks.

Synthesis only sends subtopics that carry real content.  Two filter passes:

    strict  — complete, not failed, ≥ MIN_CONTENT_CHARS of content
    relaxed — complete, not failed, any non-empty content

If both passes come back empty the orchestrator never calls the model and
returns :func:`diagnostic_report` instead.  If the synthesis call itself
fails after retries, :func:`plain_report` stitches the usable sections
together locally.  Every :class:`FinalReport` built here, like every one the
orchestrator returns, has 4–6 summary points.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from delve.models.research import FinalReport, SubtopicRecord

MIN_CONTENT_CHARS = 200
RELAXED_MIN_CONTENT_CHARS = 1

MIN_SUMMARY_POINTS = 4
MAX_SUMMARY_POINTS = 6

_HEADING_RE = re.compile(r"^#{2,3}\s+(.+?)\s*#*\s*$", re.MULTILINE)


def select_for_synthesis(
    subtopics: Sequence[SubtopicRecord],
    min_chars: int = MIN_CONTENT_CHARS,
) -> list[SubtopicRecord]:
    """Subtopics usable as synthesis input at the given content threshold."""
    return [
        s for s in subtopics
        if s.is_complete
        and not s.failed
        and len((s.content or "").strip()) >= min_chars
    ]


def _failure_reason(record: SubtopicRecord) -> str:
    if record.failed:
        return f"research call failed: {record.error}"
    if not record.is_complete:
        return f"never finished (status: {record.status.value})"
    length = len((record.content or "").strip())
    if length == 0:
        return "no content returned"
    return f"only {length} characters of content"


def diagnostic_report(topic: str, subtopics: Sequence[SubtopicRecord]) -> FinalReport:
    """Deterministic report explaining why nothing could be synthesised."""
    total = len(subtopics)
    failed = sum(1 for s in subtopics if s.failed)
    empty = sum(1 for s in subtopics if not s.failed and not (s.content or "").strip())

    lines = [
        f"# Research Report: {topic}",
        "",
        "No usable research content was produced, so no synthesis was attempted.",
        "",
        "## Subtopic diagnostics",
        "",
    ]
    if not subtopics:
        lines.append("- The research plan was empty.")
    for i, record in enumerate(subtopics, 1):
        lines.append(f"{i}. **{record.title}** — {_failure_reason(record)}")
    lines += [
        "",
        "## Next steps",
        "",
        "Reset the session and run the research again. If every subtopic failed, "
        "check the generation API configuration and quota.",
    ]

    summary = [
        f"No usable research content was produced for '{topic}'.",
        f"{failed} of {total} subtopics failed during research.",
        f"{empty} of {total} subtopics returned no content.",
        "The report below lists each subtopic and why it was unusable.",
    ]
    return FinalReport(summary=summary, report="\n".join(lines))


def plain_report(
    topic: str,
    usable: Sequence[SubtopicRecord],
    all_subtopics: Sequence[SubtopicRecord] | None = None,
    reason: str = "",
) -> FinalReport:
    """Markdown report assembled from raw subtopic content, without the model."""
    lines = [f"# Research Report: {topic}", ""]
    if reason:
        lines += [f"*Automatic synthesis was unavailable ({reason}); "
                  "sections are shown as researched.*", ""]
    for record in usable:
        lines += [f"## {record.title}", "", (record.content or "").strip(), ""]
        if record.sources:
            refs = ", ".join(s.title or s.uri for s in record.sources[:3])
            lines += [f"*Sources: {refs}*", ""]

    skipped = [s for s in (all_subtopics or []) if s not in usable]
    if skipped:
        lines += ["## Not covered", ""]
        lines += [f"- **{s.title}** — {_failure_reason(s)}" for s in skipped]
        lines.append("")

    report = "\n".join(lines).rstrip() + "\n"
    return FinalReport(
        summary=normalize_summary([], report, [s.title for s in usable]),
        report=report,
    )


def normalize_summary(
    summary: Sequence[str],
    report: str,
    titles: Sequence[str] = (),
) -> list[str]:
    """Clamp *summary* to 4–6 non-empty points.

    Too many points are truncated.  Too few are topped up from the report's
    ``##`` headings, then from subtopic *titles*, then with generic points.
    """
    points: list[str] = []
    for item in summary:
        text = str(item).strip()
        if text and text not in points:
            points.append(text)
    points = points[:MAX_SUMMARY_POINTS]

    fillers = [f"Covers {h.strip()}." for h in _HEADING_RE.findall(report)]
    fillers += [f"Covers {t}." for t in titles]
    fillers += [
        "Synthesised from the researched subtopics.",
        "See the full report for details and sources.",
        "Findings are grouped by subtopic.",
        "Gaps are listed where research was incomplete.",
    ]
    for filler in fillers:
        if len(points) >= MIN_SUMMARY_POINTS:
            break
        if filler not in points:
            points.append(filler)
    return points
