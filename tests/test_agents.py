from __future__ import annotations

import pytest

from devpipe.errors import AdapterUnavailable, MalformedResponse
from devpipe.models import (
    Complexity,
    FixSuggestion,
    QuestionSet,
    ReviewFinding,
    ReviewFindings,
    ReviewIssue,
    ReviewQuality,
    ReviewRecommendations,
    ReviewSeverity,
    ReviewType,
    TaskPlan,
    TriageAnalysis,
    TriageQuestion,
)
from devpipe.reasoning import PromptContext
from devpipe.review import CodeReviewAgent, determine_quality
from devpipe.triage import TriageAgent, basic_questions

from conftest import ScriptedReasoning

FILES = {"app.py": "def add(a, b):\n    return a - b\n"}


def issue(severity: ReviewSeverity, review_type: ReviewType = ReviewType.LOGIC) -> ReviewIssue:
    return ReviewIssue(task_id="TASK-1", review_type=review_type, severity=severity, title=f"{severity.value} issue")


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_analysis_falls_back_to_clarification():
    agent = TriageAgent(ScriptedReasoning())

    analysis = await agent.analyze_requirements("TASK-1", "Build a todo API\nwith users")

    assert analysis.summary == "Build a todo API"
    assert analysis.requires_clarification


@pytest.mark.asyncio
async def test_no_questions_when_clarification_is_not_needed():
    reasoning = ScriptedReasoning()
    agent = TriageAgent(reasoning)

    questions = await agent.generate_questions("TASK-1", TriageAnalysis(summary="clear", requires_clarification=False))

    assert questions == []
    assert reasoning.calls == []


@pytest.mark.asyncio
async def test_empty_question_set_falls_back_to_basic_questions():
    reasoning = ScriptedReasoning({QuestionSet: QuestionSet(questions=[])})
    agent = TriageAgent(reasoning)

    questions = await agent.generate_questions("TASK-1", TriageAnalysis(summary="vague", requires_clarification=True))

    assert [q.id for q in questions] == [q.id for q in basic_questions().questions]
    assert [q.id for q in questions if q.required] == ["Q-scale", "Q-users", "Q-integrations"]


@pytest.mark.asyncio
async def test_task_plan_sends_only_answered_questions():
    captured: list[PromptContext] = []

    def plan(prompt: PromptContext) -> TaskPlan:
        captured.append(prompt)
        return TaskPlan(overview="plan")

    agent = TriageAgent(ScriptedReasoning({TaskPlan: plan}))
    questions = [
        TriageQuestion(id="Q-1", question="Which database?", answer="SQLite"),
        TriageQuestion(id="Q-2", question="Auth?"),
    ]

    result = await agent.create_task_plan("TASK-1", TriageAnalysis(summary="todo"), questions)

    assert result.overview == "plan"
    assert captured[0].payload["answers"] == [{"question": "Which database?", "answer": "SQLite"}]


@pytest.mark.asyncio
async def test_task_plan_fallback_is_three_ordered_steps():
    agent = TriageAgent(ScriptedReasoning())
    analysis = TriageAnalysis(
        summary="todo",
        functional_requirements=["Create todos"],
        technical_requirements=["Python"],
        estimated_complexity=Complexity.LOW,
    )

    plan = await agent.create_task_plan("TASK-1", analysis, [])

    assert [step.title for step in plan.steps] == ["Setup", "Core implementation", "Testing"]
    assert plan.steps[1].acceptance_criteria == ["Create todos"]
    assert plan.steps[2].dependencies == ["2"]
    assert plan.technical_decisions == ["Python"]


# ---------------------------------------------------------------------------
# Code review
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("severities", "quality"),
    [
        ([], ReviewQuality.EXCELLENT),
        ([ReviewSeverity.INFO] * 3 + [ReviewSeverity.MINOR] * 5, ReviewQuality.EXCELLENT),
        ([ReviewSeverity.MINOR] * 6, ReviewQuality.GOOD),
        ([ReviewSeverity.MAJOR], ReviewQuality.GOOD),
        ([ReviewSeverity.MAJOR] * 4, ReviewQuality.NEEDS_IMPROVEMENT),
        ([ReviewSeverity.MINOR, ReviewSeverity.CRITICAL], ReviewQuality.POOR),
    ],
)
def test_determine_quality(severities, quality):
    assert determine_quality([issue(severity) for severity in severities]) == quality


@pytest.mark.asyncio
async def test_review_runs_all_four_analyses_and_tolerates_one_malformed_answer():
    def findings(prompt: PromptContext) -> ReviewFindings:
        if prompt.purpose == "review.performance":
            raise MalformedResponse(detail="not json")
        return ReviewFindings(issues=[ReviewFinding(title=f"{prompt.purpose} finding", file_path="app.py")])

    reasoning = ScriptedReasoning({ReviewFindings: findings})
    agent = CodeReviewAgent(reasoning)

    issues = await agent.review_code("TASK-1", FILES)

    assert sorted(reasoning.purposes()) == [
        "review.architecture",
        "review.logic",
        "review.performance",
        "review.security",
    ]
    assert sorted(i.review_type for i in issues) == sorted(
        [ReviewType.SECURITY, ReviewType.LOGIC, ReviewType.ARCHITECTURE]
    )
    assert all(i.task_id == "TASK-1" and i.severity == ReviewSeverity.MAJOR for i in issues)


@pytest.mark.asyncio
async def test_review_fails_when_the_adapter_is_unavailable():
    agent = CodeReviewAgent(ScriptedReasoning({ReviewFindings: AdapterUnavailable(detail="down")}))

    with pytest.raises(AdapterUnavailable):
        await agent.review_code("TASK-1", FILES)


@pytest.mark.asyncio
async def test_summary_without_issues_makes_no_call():
    reasoning = ScriptedReasoning()

    summary = await CodeReviewAgent(reasoning).generate_summary("TASK-1", [])

    assert reasoning.calls == []
    assert summary.total_issues == 0
    assert summary.overall_quality == ReviewQuality.EXCELLENT
    assert summary.by_severity == {"CRITICAL": 0, "MAJOR": 0, "MINOR": 0, "INFO": 0}
    assert set(summary.by_type) == {"SECURITY", "PERFORMANCE", "LOGIC", "ARCHITECTURE"}
    assert summary.recommendations == []


@pytest.mark.asyncio
async def test_summary_counts_issues_and_falls_back_on_recommendations():
    issues = [
        issue(ReviewSeverity.CRITICAL, ReviewType.SECURITY),
        issue(ReviewSeverity.MINOR, ReviewType.SECURITY),
        issue(ReviewSeverity.MAJOR, ReviewType.LOGIC),
    ]

    summary = await CodeReviewAgent(ScriptedReasoning()).generate_summary("TASK-1", issues)

    assert summary.total_issues == 3
    assert summary.by_severity["CRITICAL"] == 1
    assert summary.by_type["SECURITY"] == 2
    assert summary.overall_quality == ReviewQuality.POOR
    assert summary.recommendations == ["Address critical issues before deployment"]

    reasoning = ScriptedReasoning({ReviewRecommendations: ReviewRecommendations(recommendations=["Fix injection"])})
    summary = await CodeReviewAgent(reasoning).generate_summary("TASK-1", issues)
    assert summary.recommendations == ["Fix injection"]


@pytest.mark.asyncio
async def test_suggest_fix_falls_back_to_the_issue_suggestion():
    found = issue(ReviewSeverity.MAJOR).model_copy(update={"suggestion": "Use addition"})
    agent = CodeReviewAgent(ScriptedReasoning())

    fix = await agent.suggest_fix(found, FILES["app.py"])

    assert fix == FixSuggestion(explanation="Use addition", fixed_code=FILES["app.py"])
