"""Built-in prompt blocks and the batch answering composition."""

from __future__ import annotations

from answer_engine.prompts.composition import (
    CALL_MODE_BLOCK_ID,
    BlockLibrary,
    PromptBlock,
    PromptComposition,
)

RFP_BATCH_COMPOSITION = "rfp_batch"

ROLE_BLOCK = PromptBlock(
    id="role_rfp_specialist",
    name="Questionnaire Specialist Role",
    content="""You complete security questionnaires and RFPs with accurate, client-ready answers.
Skills hold pre-verified knowledge; consult them before anything else.

- Write confidently and directly; the response is shown to the client as-is.
- State what is known instead of hedging ("unable to determine").
- Reasoning and inference carry the transparency burden: what was explicit, what was deduced, what is missing.
- For requests for specific documents (SOC 2 reports, policies, pen test reports), point to the trust center.""",
)

SOURCE_PRIORITY_BLOCK = PromptBlock(
    id="rfp_source_priority",
    name="Source Priority",
    content="""The skill library is the authoritative source.

- When several skills apply, synthesize all of them and attribute each detail to its skill.
- When skills are thin, still answer from what is documented and lower the confidence.
- Never fabricate details; record deductions in the inference field.""",
)

QUALITY_BLOCK = PromptBlock(
    id="rfp_quality_checks",
    name="Quality Checks",
    content="""Before finalizing each answer check that:
1. The response addresses the specific topic asked.
2. Yes/no questions get a clear Yes or No.
3. The confidence level matches the evidence.
4. Inference explains any deduction (required for Medium confidence).

If reasoning says the skills mention X and Y but not Z, relevant information was found: answer from X and Y and explain Z in inference.""",
)

SCOPE_BLOCK = PromptBlock(
    id="scope_validation",
    name="Scope Validation",
    content="""Questions about "your product" or "your platform" may concern either:
- product features customers use (SSO, access controls, user management), or
- company functions (employee onboarding, internal security processes, attestations).

Answer the scope that was asked. When the skills only cover the other scope, say so in reasoning, lower the confidence and explain the mismatch in inference.""",
)

CONFIDENCE_BLOCK = PromptBlock(
    id="rfp_confidence_levels",
    name="Confidence Levels",
    content="""High: explicitly stated in the skills; inference is "None".
Medium: reasonably inferred from the skills; inference explains the deduction.
Low: tangential or partial information; inference explains what is missing.

If any relevant information was found, use one of these levels.""",
)

BATCH_INSTRUCTION_BLOCK = PromptBlock(
    id="batch_json_instruction",
    name="Batch Instruction",
    content="""Answer every question in the batch. Each question is prefixed with its number; echo that number as questionIndex so answers can be matched back to questions regardless of order.
Return ONLY a valid JSON array. No markdown code fences and no text outside the JSON.""",
)

BATCH_SCHEMA_BLOCK = PromptBlock(
    id="rfp_batch_questions_schema",
    name="Batch Answer JSON Schema",
    content="""[
  {
    "questionIndex": "integer - the question number",
    "response": "Confident, client-ready answer",
    "confidence": "High | Medium | Low",
    "sources": "Skill names used, comma-separated (or \\"None\\")",
    "reasoning": "What was explicitly found in the skills",
    "inference": "What was deduced (or \\"None\\" if all explicit)",
    "remarks": "Caveats or limitations (or \\"None\\")"
  }
]""",
)

SOURCE_FIDELITY_BLOCK = PromptBlock(
    id="source_fidelity",
    name="Source Fidelity",
    content="""- Only include information found in the provided sources.
- Do not expand "we have X" into implementation specifics.
- When a source lists items (platforms, integrations, features), include all of them.
- Note contradictions between sources explicitly.""",
)

CALL_MODE_BLOCK = PromptBlock(
    id=CALL_MODE_BLOCK_ID,
    name="Live Call Mode",
    content="""The user is on a live call. Keep each response short enough to read aloud: lead with the answer, at most two or three sentences.""",
)

DEFAULT_BLOCKS = [
    ROLE_BLOCK,
    SOURCE_PRIORITY_BLOCK,
    QUALITY_BLOCK,
    SCOPE_BLOCK,
    CONFIDENCE_BLOCK,
    BATCH_INSTRUCTION_BLOCK,
    BATCH_SCHEMA_BLOCK,
    SOURCE_FIDELITY_BLOCK,
    CALL_MODE_BLOCK,
]


def default_block_library() -> BlockLibrary:
    """A fresh library holding the built-in blocks and the batch composition."""
    library = BlockLibrary(DEFAULT_BLOCKS)
    library.register_composition(
        PromptComposition(
            id=RFP_BATCH_COMPOSITION,
            description="Answer a batch of questionnaire questions as a JSON array.",
            block_ids=[
                ROLE_BLOCK.id,
                SOURCE_PRIORITY_BLOCK.id,
                QUALITY_BLOCK.id,
                SCOPE_BLOCK.id,
                CONFIDENCE_BLOCK.id,
                BATCH_INSTRUCTION_BLOCK.id,
                BATCH_SCHEMA_BLOCK.id,
                SOURCE_FIDELITY_BLOCK.id,
            ],
        )
    )
    return library
