from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from labeleval.core.db import Base, SessionLocal, _ENGINE, get_db_path
from labeleval.models import dataset, evaluation, evaluation_result, prompt  # noqa: F401
from labeleval.repositories.datasets import DatasetRepository
from labeleval.repositories.prompts import PromptRepository

DEMO_PROMPT = (
    "Decide whether the following customer message is a complaint.\n\n"
    "Message:\n{{messageContent}}\n\n"
    "Answer with <answer>true</answer> or <answer>false</answer>."
)

DEMO_MESSAGES = [
    {"messageContent": "My order arrived broken and nobody answers the phone.", "label": True},
    {"messageContent": "Thanks, the replacement came quickly!", "label": False},
    {"messageContent": "I was charged twice for the same subscription.", "label": True},
    {"messageContent": "Can you tell me your opening hours?", "label": False},
    {"messageContent": "The app crashes every time I open the settings page.", "label": True},
    {"messageContent": "Great service as always.", "label": False},
]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a demo prompt and dataset for local runs.")
    parser.add_argument("--model-id", default="gpt-4o-mini", help="Model id passed to the chat-completions endpoint.")
    parser.add_argument("--actor", default="demo-user", help="Owner recorded on the seeded rows.")
    parser.add_argument("--dataset-name", default="demo-complaints", help="Unique dataset name.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    Base.metadata.create_all(_ENGINE)

    db = SessionLocal()
    try:
        seeded_prompt = PromptRepository(db).create_prompt(
            name="complaint-detector",
            model_id=args.model_id,
            prompt_text=DEMO_PROMPT,
            max_tokens=256,
            temperature=0.0,
            opening_tag="<answer>",
            closing_tag="</answer>",
            created_by=args.actor,
        )
        seeded_dataset = DatasetRepository(db).create_dataset(
            name=args.dataset_name,
            messages=DEMO_MESSAGES,
            created_by=args.actor,
        )
        db.commit()
        print(f"DB: {get_db_path()}")
        print(f"promptId={seeded_prompt.id}")
        print(f"datasetId={seeded_dataset.id}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
