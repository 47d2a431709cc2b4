from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Iterable

from .models import (
    FixSuggestion,
    ReviewFindings,
    ReviewIssue,
    ReviewQuality,
    ReviewRecommendations,
    ReviewSeverity,
    ReviewSummary,
    ReviewType,
)
from .reasoning import PromptContext, ReasoningAdapter, judge

logger = logging.getLogger(__name__)

_FOCUS: dict[ReviewType, str] = {
    ReviewType.SECURITY: "security vulnerabilities such as injection, secrets in code, unsafe input handling and auth flaws",
    ReviewType.PERFORMANCE: "performance problems such as needless work, N+1 access patterns, blocking calls and memory growth",
    ReviewType.LOGIC: "logic errors such as wrong conditions, unhandled edge cases, off-by-one mistakes and error handling gaps",
    ReviewType.ARCHITECTURE: "architecture issues such as tight coupling, unclear responsibilities and violated layering",
}
REVIEW_INSTRUCTIONS = (
    "You are an expert code reviewer. Review the files for {focus}. Report each issue with its file "
    "path, line number when known, severity (CRITICAL, MAJOR, MINOR or INFO), a title, a description "
    "and a suggested fix. Return no issues when there are none."
)
SUMMARY_INSTRUCTIONS = "Given the review issues, list the most important recommendations in priority order."
FIX_INSTRUCTIONS = "Explain how to fix the review issue and return the corrected code."


def determine_quality(issues: Iterable[ReviewIssue]) -> ReviewQuality:
    counts = Counter(issue.severity for issue in issues)
    if counts[ReviewSeverity.CRITICAL] > 0:
        return ReviewQuality.POOR
    if counts[ReviewSeverity.MAJOR] > 3:
        return ReviewQuality.NEEDS_IMPROVEMENT
    if counts[ReviewSeverity.MAJOR] > 0 or counts[ReviewSeverity.MINOR] > 5:
        return ReviewQuality.GOOD
    return ReviewQuality.EXCELLENT


def fallback_recommendations() -> ReviewRecommendations:
    return ReviewRecommendations(recommendations=["Address critical issues before deployment"])


class CodeReviewAgent:
    """Runs the four review analyses and summarizes their findings."""

    def __init__(self, reasoning: ReasoningAdapter) -> None:
        self.reasoning = reasoning

    async def _analyze(
        self,
        task_id: str,
        review_type: ReviewType,
        files: dict[str, str],
        context: str,
    ) -> list[ReviewIssue]:
        prompt = PromptContext(
            task_id=task_id,
            purpose=f"review.{review_type.value.lower()}",
            instructions=REVIEW_INSTRUCTIONS.format(focus=_FOCUS[review_type]),
            payload={"files": files, "context": context},
        )
        judgment = await judge(self.reasoning, prompt, ReviewFindings, ReviewFindings)
        return [
            ReviewIssue(
                task_id=task_id,
                review_type=review_type,
                severity=finding.severity,
                file_path=finding.file_path,
                line_number=finding.line_number,
                title=finding.title,
                description=finding.description,
                suggestion=finding.suggestion,
            )
            for finding in judgment.value.issues
        ]

    async def review_code(self, task_id: str, files: dict[str, str], context: str = "") -> list[ReviewIssue]:
        """Run SECURITY, PERFORMANCE, LOGIC and ARCHITECTURE reviews concurrently.

        A malformed answer from one analysis contributes no issues; an
        unavailable adapter fails the whole review.
        """
        results = await asyncio.gather(
            *(self._analyze(task_id, review_type, files, context) for review_type in ReviewType)
        )
        issues = [issue for batch in results for issue in batch]
        logger.info("Review of %s found %d issue(s) across %d file(s)", task_id, len(issues), len(files))
        return issues

    async def generate_summary(self, task_id: str, issues: list[ReviewIssue]) -> ReviewSummary:
        by_severity = Counter(issue.severity.value for issue in issues)
        by_type = Counter(issue.review_type.value for issue in issues)
        if issues:
            prompt = PromptContext(
                task_id=task_id,
                purpose="review.summary",
                instructions=SUMMARY_INSTRUCTIONS,
                payload={"issues": [issue.model_dump(mode="json") for issue in issues]},
            )
            judgment = await judge(self.reasoning, prompt, ReviewRecommendations, fallback_recommendations)
            recommendations = judgment.value.recommendations
        else:
            recommendations = []
        return ReviewSummary(
            total_issues=len(issues),
            by_severity={severity.value: by_severity.get(severity.value, 0) for severity in ReviewSeverity},
            by_type={review_type.value: by_type.get(review_type.value, 0) for review_type in ReviewType},
            overall_quality=determine_quality(issues),
            recommendations=recommendations,
        )

    async def suggest_fix(self, issue: ReviewIssue, code: str) -> FixSuggestion:
        prompt = PromptContext(
            task_id=issue.task_id,
            purpose="review.fix",
            instructions=FIX_INSTRUCTIONS,
            payload={"issue": issue.model_dump(mode="json"), "code": code},
        )
        judgment = await judge(
            self.reasoning,
            prompt,
            FixSuggestion,
            lambda: FixSuggestion(explanation=issue.suggestion or "No automated fix available", fixed_code=code),
        )
        return judgment.value
