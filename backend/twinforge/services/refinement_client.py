"""
Refinement Client — sends the refinement prompt with the scan photos and
validates the structure of the reply.

The reply must carry ``final_shape_params`` and ``final_limb_masses`` as
non-empty objects of finite numbers; anything else raises a
ReplyValidationError naming the field. No retry is attempted here.
"""
import logging
from dataclasses import asdict, dataclass, field

from twinforge.models.morph_types import is_finite_number
from twinforge.pipeline.config import DEFAULT_AI_CONFIDENCE, REFINE_MAX_TOKENS, REFINE_TEMPERATURE
from twinforge.services import llm_client
from twinforge.services.errors import ReplyValidationError

logger = logging.getLogger("twinforge-refine")

_LIST_FIELDS = (
    "refinement_notes",
    "clamped_keys",
    "envelope_violations",
    "db_violations",
    "gender_violations",
    "missing_keys_added",
    "extra_keys_removed",
)


@dataclass
class RefinementReply:
    final_shape_params: dict
    final_limb_masses: dict
    ai_confidence: float = DEFAULT_AI_CONFIDENCE
    refinement_notes: list = field(default_factory=list)
    clamped_keys: list = field(default_factory=list)
    envelope_violations: list = field(default_factory=list)
    db_violations: list = field(default_factory=list)
    gender_violations: list = field(default_factory=list)
    out_of_range_count: int = 0
    missing_keys_added: list = field(default_factory=list)
    extra_keys_removed: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _numeric_map(reply: dict, name: str) -> dict:
    if name not in reply or reply[name] is None:
        raise ReplyValidationError(name, "is missing")
    values = reply[name]
    if not isinstance(values, dict):
        raise ReplyValidationError(name, "must be an object")
    if not values:
        raise ReplyValidationError(name, "is empty")
    for key, value in values.items():
        if not is_finite_number(value):
            raise ReplyValidationError(f"{name}.{key}", f"must be a finite number, got {value!r}")
    return {k: float(v) for k, v in values.items()}


def validate_refinement_reply(reply: dict) -> RefinementReply:
    shape = _numeric_map(reply, "final_shape_params")
    limbs = _numeric_map(reply, "final_limb_masses")

    confidence = reply.get("ai_confidence", reply.get("confidence"))
    confidence = (
        min(1.0, max(0.0, float(confidence)))
        if is_finite_number(confidence)
        else DEFAULT_AI_CONFIDENCE
    )
    lists = {
        name: list(reply[name]) if isinstance(reply.get(name), list) else []
        for name in _LIST_FIELDS
    }
    out_of_range = reply.get("out_of_range_count")
    out_of_range = int(out_of_range) if is_finite_number(out_of_range) and out_of_range >= 0 else 0

    return RefinementReply(
        final_shape_params=shape,
        final_limb_masses=limbs,
        ai_confidence=confidence,
        out_of_range_count=out_of_range,
        **lists,
    )


async def request_refinement(prompt: str, photo_urls: list[str]) -> RefinementReply:
    content = await llm_client.complete_with_vision(
        prompt,
        photo_urls,
        temperature=REFINE_TEMPERATURE,
        max_tokens=REFINE_MAX_TOKENS,
        json_mode=True,
    )
    reply = validate_refinement_reply(llm_client.parse_json_reply(content))
    logger.info(
        f"Refinement reply: {len(reply.final_shape_params)} shape keys, "
        f"{len(reply.final_limb_masses)} limb keys, confidence={reply.ai_confidence:.2f}"
    )
    return reply
