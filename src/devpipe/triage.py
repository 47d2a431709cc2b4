from __future__ import annotations

import logging

from .models import (
    QuestionCategory,
    QuestionSet,
    TaskPlan,
    TaskPlanStep,
    TriageAnalysis,
    TriageQuestion,
)
from .reasoning import PromptContext, ReasoningAdapter, judge

logger = logging.getLogger(__name__)

ANALYZE_INSTRUCTIONS = (
    "You are a senior technical analyst. Analyze the requirements and extract the summary, the "
    "technical and functional requirements, constraints, assumptions, risks, a suggested approach and "
    "an estimated complexity (LOW, MEDIUM, HIGH or VERY_HIGH). Set requires_clarification when the "
    "requirements are ambiguous or incomplete."
)
QUESTIONS_INSTRUCTIONS = (
    "Generate the clarifying questions needed before implementation can start. Each question has a "
    "category (technical, functional, scope, integration or constraints), says whether an answer is "
    "required, and explains why it matters."
)
TASK_PLAN_INSTRUCTIONS = (
    "Create a detailed task plan from the analysis and the answered questions: an overview, ordered "
    "steps with dependencies, estimated effort and acceptance criteria, the key technical decisions "
    "and the resources needed."
)


def clarification_analysis(requirements: str) -> TriageAnalysis:
    """Conservative analysis used when the analysis response is unusable: ask the human."""
    summary = requirements.strip().splitlines()[0][:200] if requirements.strip() else "Unspecified requirements"
    return TriageAnalysis(
        summary=summary,
        risks=["Requirements could not be analyzed automatically"],
        suggested_approach="Clarify the requirements before planning",
        requires_clarification=True,
    )


def basic_questions() -> QuestionSet:
    return QuestionSet(
        questions=[
            TriageQuestion(
                id="Q-scale",
                question="What are the expected scale and performance requirements?",
                category=QuestionCategory.TECHNICAL,
                required=True,
                context="Determines the architecture and technology choices",
            ),
            TriageQuestion(
                id="Q-users",
                question="Who are the primary users and what are their key workflows?",
                category=QuestionCategory.FUNCTIONAL,
                required=True,
                context="Shapes the user-facing behaviour",
            ),
            TriageQuestion(
                id="Q-timeline",
                question="Are there timeline or milestone constraints?",
                category=QuestionCategory.SCOPE,
                required=False,
                context="Helps prioritize features",
            ),
            TriageQuestion(
                id="Q-integrations",
                question="Which existing systems or services must this integrate with?",
                category=QuestionCategory.INTEGRATION,
                required=True,
                context="Identifies integration requirements",
            ),
        ]
    )


def basic_task_plan(analysis: TriageAnalysis) -> TaskPlan:
    return TaskPlan(
        overview=analysis.summary,
        steps=[
            TaskPlanStep(
                id="1",
                title="Setup",
                description="Set up the project structure and dependencies",
                estimated_effort="small",
                acceptance_criteria=["Project builds"],
            ),
            TaskPlanStep(
                id="2",
                title="Core implementation",
                description="Implement the core functionality",
                dependencies=["1"],
                estimated_effort="large",
                acceptance_criteria=list(analysis.functional_requirements) or ["Core features work"],
            ),
            TaskPlanStep(
                id="3",
                title="Testing",
                description="Write tests and validate the implementation",
                dependencies=["2"],
                estimated_effort="medium",
                acceptance_criteria=["Tests pass"],
            ),
        ],
        technical_decisions=list(analysis.technical_requirements),
        resources=[],
    )


class TriageAgent:
    """Request/response judgments for the Triage and TaskCreation stages."""

    def __init__(self, reasoning: ReasoningAdapter) -> None:
        self.reasoning = reasoning

    async def analyze_requirements(self, task_id: str, requirements: str) -> TriageAnalysis:
        prompt = PromptContext(
            task_id=task_id,
            purpose="triage.analyze",
            instructions=ANALYZE_INSTRUCTIONS,
            payload={"requirements": requirements},
        )
        judgment = await judge(self.reasoning, prompt, TriageAnalysis, lambda: clarification_analysis(requirements))
        return judgment.value

    async def generate_questions(self, task_id: str, analysis: TriageAnalysis) -> list[TriageQuestion]:
        """Return clarifying questions; none when the analysis needs no clarification."""
        if not analysis.requires_clarification:
            return []
        prompt = PromptContext(
            task_id=task_id,
            purpose="triage.questions",
            instructions=QUESTIONS_INSTRUCTIONS,
            payload={"analysis": analysis.model_dump(mode="json")},
        )
        judgment = await judge(self.reasoning, prompt, QuestionSet, basic_questions)
        questions = judgment.value.questions
        if not questions:
            logger.warning("Analysis of %s needs clarification but no questions came back", task_id)
            questions = basic_questions().questions
        return questions

    async def create_task_plan(
        self,
        task_id: str,
        analysis: TriageAnalysis,
        questions: list[TriageQuestion],
    ) -> TaskPlan:
        prompt = PromptContext(
            task_id=task_id,
            purpose="task_creation.plan",
            instructions=TASK_PLAN_INSTRUCTIONS,
            payload={
                "analysis": analysis.model_dump(mode="json"),
                "answers": [
                    {"question": question.question, "answer": question.answer}
                    for question in questions
                    if question.answered
                ],
            },
        )
        judgment = await judge(self.reasoning, prompt, TaskPlan, lambda: basic_task_plan(analysis))
        return judgment.value
