"""
Funnel stage handling: parsing persisted stage data and flattening it.

A funnel is stored as a list of stages, each with a list of touches:

    [{"stage": 1, "title": "Warm-up", "objective": "...",
      "touches": [{"touch": 1, "delayMin": 0, "condition": "..."},
                  {"touch": 2, "delayMin": 60}]},
     ...]

The follow-up pointer (session.follow_up_stage) indexes into the flattened
list produced by flatten_stages(). Flattening is deterministic: the same
stage data always yields the same steps in the same order. Touches with no
delayMin or a negative, non-finite or non-numeric one are left out; a null
delayMin counts as 0.
"""
from __future__ import annotations

import json
import math
import structlog
from typing import Any, Optional

from models.schemas import FunnelStep

logger = structlog.get_logger()


def normalize_stages(stages: Any) -> list[dict[str, Any]]:
    """Accept a list or its JSON text; anything else yields []."""
    if isinstance(stages, list):
        return stages
    if isinstance(stages, str):
        try:
            parsed = json.loads(stages)
        except ValueError:
            logger.warning("funnel_stages_unparseable")
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _ordinal(value: Any, fallback: int) -> int:
    number = _number(value)
    if not number:
        return fallback
    return int(number)


def _text(value: Any) -> Optional[str]:
    return str(value) if value else None


def flatten_stages(stages: list[dict[str, Any]]) -> list[FunnelStep]:
    steps: list[FunnelStep] = []
    for stage_index, stage in enumerate(stages):
        if not isinstance(stage, dict):
            continue
        touches = stage.get("touches")
        if not isinstance(touches, list):
            touches = []
        stage_number = _ordinal(stage.get("stage"), stage_index + 1)
        title = _text(stage.get("title")) or f"Stage {stage_number}"
        objective = _text(stage.get("objective"))
        logic_stage = _text(stage.get("logicStage"))
        common_touch_condition = _text(stage.get("commonTouchCondition"))

        for touch_index, touch in enumerate(touches):
            if not isinstance(touch, dict):
                continue
            if "delayMin" not in touch:
                continue
            raw_delay = touch["delayMin"]
            delay_min = 0.0 if raw_delay is None else _number(raw_delay)
            if delay_min is None or delay_min < 0:
                continue
            steps.append(FunnelStep(
                stage=stage_number,
                touch=_ordinal(touch.get("touch"), touch_index + 1),
                delay_min=delay_min,
                template=_text(touch.get("template")),
                condition=_text(touch.get("condition")),
                title=title,
                objective=objective,
                logic_stage=logic_stage,
                common_touch_condition=common_touch_condition,
            ))
    return steps


def funnel_steps(stages: Any) -> list[FunnelStep]:
    return flatten_stages(normalize_stages(stages))
