from __future__ import annotations

from .models import AdvisorCritique, Decision, EditorDecision, Severity


def apply_editor_rubric(
    critiques: list[AdvisorCritique],
    min_aggregate_score: float,
    previous_avg_score: float | None = None,
) -> EditorDecision:
    """Mechanical editor rubric. No LLM judgment, pure rules.

    - Any high-severity issue: revise.
    - Average score at or above ``min_aggregate_score``: approve.
    - Below threshold but lower than the previous round's average: approve
      (oscillation guard, keeps the best version seen).
    - Otherwise: revise.

    The average counts failed evaluators as zero. The brief lists every high
    issue, then every medium issue; low-severity issues never appear.
    """
    if not critiques:
        return EditorDecision(avg_score=0, decision=Decision.APPROVE, brief="", high_issue_count=0)

    avg_score = sum(critique.score for critique in critiques) / len(critiques)

    high_lines: list[str] = []
    medium_lines: list[str] = []
    for critique in critiques:
        for issue in critique.issues:
            line = f"[{issue.severity.value.upper()}] ({critique.name}) {issue.description}"
            if issue.severity == Severity.HIGH:
                high_lines.append(line)
            elif issue.severity == Severity.MEDIUM:
                medium_lines.append(line)
    brief = "\n".join(high_lines + medium_lines)
    high_issue_count = len(high_lines)

    if high_issue_count > 0:
        decision = Decision.REVISE
    elif avg_score >= min_aggregate_score:
        decision = Decision.APPROVE
    elif previous_avg_score is not None and avg_score < previous_avg_score:
        decision = Decision.APPROVE
    else:
        decision = Decision.REVISE

    return EditorDecision(
        avg_score=avg_score,
        decision=decision,
        brief=brief,
        high_issue_count=high_issue_count,
    )
