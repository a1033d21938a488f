"""
CAF Copilot Service - Prompt builders

One pure builder per pipeline stage. Each returns a `PromptPayload` holding the
instruction text, the user content (plain text or multimodal parts) and the
stage's default sampling parameters. Every instruction block demands bare JSON,
which is what `json_recovery.recover_json` expects on its happy path.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from models import DiagnosisCandidate, MediaItem, QuestionItem, TriageResult

UNKNOWN_ANSWER = "Unknown / not provided"
DONT_KNOW_SENTINEL = "I_DONT_KNOW"

TENANT_MESSAGE_INTRO = "Hi, could you please clarify the following so we can diagnose the issue properly:"
TENANT_MESSAGE_OUTRO = "Thank you!"
TENANT_MESSAGE_ALL_ANSWERED = "All items have been answered, nothing extra to send to tenant."

JSON_ONLY_RULES = (
    "Rules:\n"
    "- Respond with VALID JSON ONLY.\n"
    "- No markdown, no code fences, no backticks.\n"
    "- No commentary before or after the JSON.\n"
    "- No extra keys."
)


class PromptPayload(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    system_instructions: Optional[str] = None
    user_content: Union[str, List[Dict[str, Any]]]
    model_parameters: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_multimodal(self) -> bool:
        return isinstance(self.user_content, list)

    def rendered_text(self) -> str:
        """
        Flattened text of the prompt (instructions + text parts), used for
        text-generation endpoints and for inspection in tests.
        """
        chunks: List[str] = []
        if self.system_instructions:
            chunks.append(self.system_instructions)
        if isinstance(self.user_content, str):
            chunks.append(self.user_content)
        else:
            for part in self.user_content:
                if part.get("type") == "text":
                    chunks.append(str(part.get("text", "")))
        return "\n\n".join(c for c in chunks if c)


# =============================================================================
# SHARED HELPERS
# =============================================================================


def format_number(value: Any) -> str:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    if number.is_integer():
        return str(int(number))
    return str(number)


def normalize_answer(value: Optional[str]) -> str:
    if value is None:
        return UNKNOWN_ANSWER
    text = str(value).strip()
    if not text or text == DONT_KNOW_SENTINEL:
        return UNKNOWN_ANSWER
    return text


def is_unanswered(value: Optional[str]) -> bool:
    return normalize_answer(value) == UNKNOWN_ANSWER


def format_checklist_answers(
    checklist: List[QuestionItem],
    answers: Dict[str, Optional[str]],
) -> str:
    return "\n\n".join(
        f"Q: {q.question}\nA: {normalize_answer(answers.get(q.id))}" for q in checklist
    )


def image_parts(media: List[MediaItem]) -> List[Dict[str, Any]]:
    return [
        {"type": "image_url", "image_url": {"url": m.url}}
        for m in media
        if m.is_image
    ]


def build_tenant_message(
    checklist: List[QuestionItem],
    answers: Dict[str, Optional[str]],
) -> Tuple[str, List[QuestionItem]]:
    """
    Bundles every unanswered checklist question into one message for the tenant.
    """
    unanswered = [q for q in checklist if is_unanswered(answers.get(q.id))]
    if not unanswered:
        return TENANT_MESSAGE_ALL_ANSWERED, []
    bullets = "\n".join(f"• {q.question}" for q in unanswered)
    message = f"{TENANT_MESSAGE_INTRO}\n\n{bullets}\n\n{TENANT_MESSAGE_OUTRO}"
    return message, unanswered


# =============================================================================
# TRIAGE
# =============================================================================

TRIAGE_INSTRUCTIONS = f"""
You are CAF Copilot, an AI triage assistant for a residential property maintenance
coordination company.

Read the tenant / property manager description and return STRICT JSON with this
exact structure:

{{
  "category": "string (e.g. Plumbing, Electrical, Roofing, Carpentry, Appliances, General)",
  "hazards": ["string"],
  "summary": "string, 1-3 sentences",
  "questions_checklist": [
    {{"id": "q1", "question": "string", "reason": "why the dispatcher needs this"}}
  ],
  "tenant_message": "string, a short friendly message to the tenant asking the checklist questions",
  "diagnosis": {{
    "most_likely": "string",
    "alternatives": ["string"],
    "confidence": 0.0
  }}
}}

Guidance:
- The category is free text; pick the trade area that fits best.
- Hazards must only be derived from the description (water near power, gas smell, etc.).
- questions_checklist must contain between 3 and 10 items that would close the biggest
  information gaps. Use ids "q1", "q2", ... in order. "reason" is optional.
- confidence is a number between 0 and 1.

{JSON_ONLY_RULES}
""".strip()


def build_triage_prompt(description: str) -> PromptPayload:
    return PromptPayload(
        system_instructions=TRIAGE_INSTRUCTIONS,
        user_content=f"JOB DESCRIPTION:\n{description.strip()}",
        model_parameters={"temperature": 0.2, "max_tokens": 1200},
    )


# =============================================================================
# VISION RECON
# =============================================================================

VISION_INSTRUCTIONS = f"""
You are CAF Copilot Vision Recon. You describe ONLY what is visible in the photos of a
residential maintenance issue.

Strict rules:
- Describe what you can see. Do NOT diagnose root causes.
- Do NOT suggest repairs, trades, materials to buy or prices.
- If something is unclear in the photos, say so instead of guessing.

Return STRICT JSON with this exact structure:

{{
  "vision_summary": "string, what the photos show overall",
  "objects": ["fixtures, appliances and building elements visible"],
  "visible_damage": {{"type": "string", "extent": "string", "location": "string"}},
  "hazards": ["visible hazards only"],
  "materials": {{"surface_or_part": "material it appears to be made of"}},
  "labels_or_text": ["brand names, model numbers or any readable text"],
  "measurements": {{"item": "estimated size if it can be judged from the photo"}},
  "location_hint": "string, e.g. kitchen, bathroom, exterior wall"
}}

{JSON_ONLY_RULES}
""".strip()


def build_vision_prompt(context: str, media: List[MediaItem]) -> PromptPayload:
    text = f"{VISION_INSTRUCTIONS}\n\nCONTEXT FROM DISPATCHER:\n{context.strip()}"
    return PromptPayload(
        system_instructions=None,
        user_content=[{"type": "text", "text": text}, *image_parts(media)],
        model_parameters={"temperature": 0.2, "max_tokens": 1200},
    )


# =============================================================================
# MULTIMODAL REFINEMENT
# =============================================================================

REFINE_INSTRUCTIONS = f"""
You are CAF Copilot, an AI assistant for building maintenance triage.

You will receive the original job description, the follow-up Q&A collected by the
dispatcher, the tenant's reply text and photos of the issue.

Your tasks:
1. Use the TEXT and IMAGES together to understand what is happening.
2. Identify the most likely root cause and propose alternatives.
3. Rate your confidence between 0 and 1.
4. Summarise what the images show and highlight visible hazards.

Return STRICT JSON with this exact structure:

{{
  "vision_summary": "Concise description of what the photos show.",
  "vision_hazards": ["Hazard 1"],
  "refined_diagnosis": {{
    "most_likely": "Most likely cause",
    "alternatives": ["Alternative 1"],
    "confidence": 0.8,
    "notes": "What the dispatcher should watch out for or confirm on site."
  }}
}}

{JSON_ONLY_RULES}
""".strip()


def build_refine_prompt(
    description: str,
    checklist: List[QuestionItem],
    answers: Dict[str, Optional[str]],
    tenant_text: str,
    media: List[MediaItem],
) -> PromptPayload:
    qa_text = format_checklist_answers(checklist, answers) or "No Q&A provided."
    text = (
        f"{REFINE_INSTRUCTIONS}\n\n"
        f"JOB DESCRIPTION:\n{description.strip()}\n\n"
        f"DISPATCHER Q&A:\n{qa_text}\n\n"
        f"TENANT REPLY TEXT:\n{tenant_text.strip() or 'No additional tenant reply text provided.'}"
    )
    return PromptPayload(
        system_instructions=None,
        user_content=[{"type": "text", "text": text}, *image_parts(media)],
        model_parameters={"temperature": 0.2, "max_tokens": 1200},
    )


# =============================================================================
# FINAL DIAGNOSIS
# =============================================================================

FINAL_DIAGNOSIS_INSTRUCTIONS = f"""
You are CAF Copilot, an AI assistant for a property maintenance coordination company.

You will receive:
- A job description
- An initial triage summary (category, hazards, summary)
- Dispatcher Q&A (what is known; "{UNKNOWN_ANSWER}" marks gaps)
- Tenant reply text
- A visual recon report (JSON) generated from photos

Your task:
1. Propose between 1 and 4 plausible diagnoses (root causes) for the issue.
2. For EACH diagnosis provide a title, a short description, confidence (0-1),
   severity ("low", "medium" or "high"), urgency in hours, safety concerns,
   the trade required (e.g. plumber, electrician, carpenter, roofer, handyman),
   high-level repair steps, materials needed, estimated labour time in minutes
   (integer) and estimated material cost in local currency (number).

Important:
- Use ALL inputs together.
- Be realistic and practical for Australian residential property maintenance.
- Do NOT invent exotic repairs or unrealistic materials.
- Reflect uncertainty with lower confidence.
- Order diagnoses from most to least likely.

Return STRICT JSON with this exact top-level structure:

{{
  "diagnoses": [
    {{
      "title": "string",
      "description": "string",
      "confidence": 0.82,
      "severity": "low" | "medium" | "high",
      "urgency_hours": 48,
      "safety_concerns": ["string"],
      "trade_required": "string",
      "repair_steps": ["string"],
      "materials_needed": ["string"],
      "estimated_labor_minutes": 60,
      "estimated_material_cost": 120
    }}
  ]
}}

If you are unsure about a field, still fill it with your best professional estimate.

{JSON_ONLY_RULES}
""".strip()


def _triage_summary_text(triage: TriageResult) -> str:
    return (
        f"Category: {triage.category or 'Unknown'}\n"
        f"Summary: {triage.summary or 'No summary'}\n"
        f"Hazards: {', '.join(triage.hazards) or 'None listed'}\n"
        f"Initial most likely cause: {triage.diagnosis.most_likely}"
    )


def build_final_diagnosis_prompt(
    description: str,
    triage: TriageResult,
    answers: Dict[str, Optional[str]],
    tenant_text: str,
    vision_recon_raw: str,
) -> PromptPayload:
    qa_text = (
        format_checklist_answers(triage.questions_checklist, answers)
        or "No structured Q&A available."
    )
    user_content = (
        f"JOB DESCRIPTION:\n{description.strip()}\n\n"
        f"TRIAGE SUMMARY:\n{_triage_summary_text(triage)}\n\n"
        f"DISPATCHER Q&A:\n{qa_text}\n\n"
        f"TENANT REPLY TEXT:\n{tenant_text.strip() or 'No extra tenant text provided.'}\n\n"
        f"VISION RECON JSON:\n{vision_recon_raw.strip()}"
    )
    return PromptPayload(
        system_instructions=FINAL_DIAGNOSIS_INSTRUCTIONS,
        user_content=user_content,
        model_parameters={"temperature": 0.2, "max_tokens": 1600},
    )


# =============================================================================
# PRICING
# =============================================================================

PRICING_INSTRUCTIONS = f"""
You are CAF Copilot, an AI pricing assistant for a property maintenance coordination
company in Australia.

You will receive a single diagnosis (root cause, trade required, estimated labour
minutes, estimated material cost, repair steps, severity and urgency). Suggest a
practical price in AUD for the property manager.

Cost model (follow it step by step):
- Labour:
  - Minimum charge is 1 hour of labour per job.
  - After the first hour, charge in 30-minute blocks.
  - Hourly rate guidance by trade:
    - Plumber: ~120 AUD/hour
    - Electrician: ~110 AUD/hour
    - Carpenter: ~95 AUD/hour
    - Handyman / General: ~85-95 AUD/hour
  - Callout, travel and small consumables are bundled into labour.
- Materials:
  - Start from the estimated material cost.
  - materials_with_buffer = materials cost + 5% buffer for small items.
  - materials_with_markup = materials_with_buffer + 20% markup.
- Job-level markup:
  - subtotal_before_markup = labour cost + materials_with_markup.
  - Add around 20% job markup on the subtotal for overhead and profit.
  - final_recommended_price = subtotal_before_markup + job_markup_amount.
- Keep exact decimal precision; do not round to whole tens.
- Urgent or high-severity jobs may lean to the higher end of a reasonable range.

Return STRICT JSON with this exact structure:

{{
  "price_recommendation": {{
    "currency": "AUD",
    "labour_minutes_estimated": 60,
    "labour_cost_estimated": 0,
    "materials_cost_estimated": 0,
    "materials_with_buffer": 0,
    "materials_with_markup": 0,
    "subtotal_before_markup": 0,
    "job_markup_percent": 20,
    "job_markup_amount": 0,
    "final_recommended_price": 0,
    "notes": "How you arrived at this price, in 1-3 sentences."
  }}
}}

Fill every numeric field with a number, even when approximating.

{JSON_ONLY_RULES}
""".strip()


def diagnosis_summary_text(diagnosis: DiagnosisCandidate) -> str:
    steps = "\n".join(f"{i}. {s}" for i, s in enumerate(diagnosis.repair_steps, start=1))
    return (
        f"Title: {diagnosis.title}\n"
        f"Description: {diagnosis.description}\n"
        f"Trade required: {diagnosis.trade_required}\n"
        f"Estimated labour minutes: {format_number(diagnosis.estimated_labor_minutes)}\n"
        f"Estimated material cost: {format_number(diagnosis.estimated_material_cost)}\n"
        f"Severity: {diagnosis.severity.value}\n"
        f"Urgency (hours): {format_number(diagnosis.urgency_hours)}\n"
        f"Repair steps:\n{steps or 'Not specified'}\n"
        f"Materials needed:\n{', '.join(diagnosis.materials_needed) or 'Not specified'}"
    )


def build_pricing_prompt(diagnosis: DiagnosisCandidate, description: str) -> PromptPayload:
    user_content = (
        "JOB DESCRIPTION (context):\n"
        f"{description.strip() or 'No extra job description beyond the diagnosis.'}\n\n"
        f"DIAGNOSIS DETAILS:\n{diagnosis_summary_text(diagnosis)}"
    )
    return PromptPayload(
        system_instructions=PRICING_INSTRUCTIONS,
        user_content=user_content,
        model_parameters={"temperature": 0.2, "max_tokens": 800},
    )


# =============================================================================
# MARKET PRICING ANALYSIS
# =============================================================================

PRICING_ANALYSIS_INSTRUCTIONS = f"""
You are the pricing consultant for CLASS A FIX (CAF), which manages maintenance for
real estate agencies in Melbourne, Australia. CAF receives subcontractor quotes and
adds a markup before quoting the agency. Sometimes there is only a short internal
description and no subcontractor quote yet. All amounts are AUD.

Work through these steps silently:
1. Understand the scope, the trades involved and the job components.
2. Build a baseline cost build-up (ex-GST) using typical Melbourne rates:
   plumber / electrician ~130-150 AUD/hr, carpenter ~110-130 AUD/hr,
   painter ~100-120 AUD/hr, handyman ~100-120 AUD/hr, gardener ~70-100 AUD/hr.
   Minimum charge is 1 full hour. Use retail-level material pricing and include
   call-out, travel, consumables and disposal where relevant.
3. Derive a realistic, reasonably tight fair market range for the whole job,
   including GST.
4. If the input contains a subcontractor quote including GST, extract it; otherwise
   set "subcontractor_quote_incl_gst" to null and "position_vs_market" to "n/a".
5. Place the quote in the range: below_range, lower_mid_range, mid_range,
   upper_mid_range or above_range.
6. Recommend a markup and a CAF sell price that keeps CAF inside the fair range
   (ideally mid-range). Recommend negotiation when the quote is already high.

Return STRICT JSON with this exact structure:

{{
  "currency": "AUD",
  "fair_range_low": 0,
  "fair_range_high": 0,
  "subcontractor_quote_incl_gst": null,
  "position_vs_market": "n/a",
  "recommended_markup_percent": 0,
  "recommended_markup_amount": 0,
  "caf_recommended_sell_price": 0,
  "caf_position_after_markup": "mid_range",
  "should_negotiate_or_change_subbie": false,
  "breakdown": {{
    "scope_summary": "string",
    "baseline_costs": [
      {{"item": "string", "estimated_cost_ex_gst": 0, "notes": "string"}}
    ],
    "market_benchmarks": ["string"],
    "comparison_summary": "string",
    "markup_strategy": "string"
  }}
}}

Numeric fields must be numbers, never strings; no "AUD" or "$" inside values.

{JSON_ONLY_RULES}
""".strip()


def build_pricing_analysis_prompt(
    diagnosis: Optional[DiagnosisCandidate],
    job_text: Optional[str],
) -> PromptPayload:
    sections: List[str] = []
    if diagnosis is not None:
        sections.append(
            "DIAGNOSIS:\n" + json.dumps(diagnosis.model_dump(mode="json"), indent=2)
        )
    if job_text and job_text.strip():
        sections.append(f"JOB NOTES / SUBCONTRACTOR QUOTE:\n{job_text.strip()}")
    return PromptPayload(
        system_instructions=PRICING_ANALYSIS_INSTRUCTIONS,
        user_content="\n\n".join(sections),
        model_parameters={"temperature": 0.2, "max_tokens": 1200},
    )
