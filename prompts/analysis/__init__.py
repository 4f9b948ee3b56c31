"""Prompt definitions used by the IST message classifier."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping, Sequence

_PROMPT_DIR = Path(__file__).resolve().parent

_NO_COURSE_CONTEXT = "(no course material provided)"


@dataclass(frozen=True)
class AnalysisPrompt:
    """Structured prompt for classifying one student message."""

    id: str
    variant: str
    prompt_version: str
    label: str
    description: str
    system_template: str
    user_template: str
    json_instructions: str

    @property
    def normalized_variant(self) -> str:
        return self.variant.lower()

    def build_messages(
        self,
        message: str,
        course_context: str | None,
        *,
        intent_labels: Sequence[str],
        skill_roles: Sequence[str],
        trajectory_statuses: Sequence[str],
    ) -> list[dict[str, str]]:
        context = (course_context or "").strip() or _NO_COURSE_CONTEXT
        system = self.system_template.format(course_context=context)
        instructions = self.json_instructions.format(
            intent_labels=", ".join(intent_labels),
            skill_roles=", ".join(skill_roles),
            trajectory_statuses=", ".join(trajectory_statuses),
        )
        return [
            {"role": "system", "content": f"{system}\n\n{instructions}"},
            {"role": "user", "content": self.user_template.format(message=message)},
        ]


def _load_prompt(path: Path) -> AnalysisPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {
        "id",
        "variant",
        "prompt_version",
        "label",
        "description",
        "system_template",
        "user_template",
        "json_instructions",
    }
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    return AnalysisPrompt(**{key: str(payload[key]) for key in sorted(required)})


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


@lru_cache(maxsize=1)
def load_prompts(directory: Path | None = None) -> Mapping[str, AnalysisPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, AnalysisPrompt] = {}
    for file_path in _iter_prompt_files(base_dir):
        prompt = _load_prompt(file_path)
        key = prompt.normalized_variant
        if key in prompts:
            raise ValueError(f"Duplicate analysis prompt variant detected: {prompt.variant}")
        prompts[key] = prompt
    if not prompts:
        raise RuntimeError(f"No analysis prompt definitions found in {base_dir}")
    return prompts


def get_prompt(variant: str | None = None) -> AnalysisPrompt:
    prompts = load_prompts()
    if not variant:
        return next(iter(prompts.values()))
    key = str(variant).lower()
    if key not in prompts:
        raise KeyError(f"Unknown analysis prompt variant '{variant}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


__all__ = ["AnalysisPrompt", "load_prompts", "get_prompt"]
