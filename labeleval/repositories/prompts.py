from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from labeleval.models.prompt import Prompt


def parse_stop_sequences(value: Optional[str]) -> list[str]:
    text = (value or "").strip()
    if not text:
        return []
    try:
        payload = json.loads(text)
    except Exception:
        return [text]
    if isinstance(payload, str):
        return [payload] if payload else []
    if isinstance(payload, list):
        return [str(item) for item in payload if str(item)]
    return []


def dump_stop_sequences(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        value = [value] if value else []
    sequences = [str(item) for item in value if str(item)]
    if not sequences:
        return ""
    return json.dumps(sequences, ensure_ascii=False)


class PromptRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_prompt(
        self,
        *,
        model_id: str,
        prompt_text: str,
        name: str = "",
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        stop_sequences: Optional[list[str]] = None,
        opening_tag: str = "",
        closing_tag: str = "",
        created_by: str = "system",
    ) -> Prompt:
        prompt = Prompt(
            name=(name or "").strip(),
            model_id=model_id.strip(),
            prompt_text=prompt_text,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            stop_sequences_json=dump_stop_sequences(stop_sequences),
            opening_tag=opening_tag,
            closing_tag=closing_tag,
            created_by=created_by,
        )
        self.db.add(prompt)
        self.db.flush()
        return prompt

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        return self.db.get(Prompt, prompt_id)

    def update_stop_sequences(self, prompt_id: str, stop_sequences: Optional[list[str]]) -> Optional[Prompt]:
        prompt = self.get_prompt(prompt_id)
        if prompt is None:
            return None
        prompt.stop_sequences_json = dump_stop_sequences(stop_sequences)
        return prompt
