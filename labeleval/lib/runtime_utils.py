from __future__ import annotations

from io import BytesIO
from typing import Any, Optional

import pandas as pd

RESULT_EXPORT_COLUMNS = (
    "Evaluation ID",
    "Message ID",
    "Message",
    "Expected Label",
    "LLM Label",
    "Correct",
    "Response Time (ms)",
    "Retry Count",
    "Error",
    "LLM Response",
)


def dataframe_to_excel_bytes(df: pd.DataFrame, sheet_name: str = "results") -> bytes:
    bio = BytesIO()
    with pd.ExcelWriter(bio, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name)
    return bio.getvalue()


def _label_text(value: Optional[bool]) -> str:
    if value is None:
        return ""
    return "true" if value else "false"


def build_results_dataframe(evaluation_id: str, items: list[dict[str, Any]]) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for item in items:
        llm_label = item.get("llmLabel")
        expected = item.get("expectedLabel")
        correct = ""
        if not item.get("errorMessage") and llm_label is not None and expected is not None:
            correct = "Y" if bool(llm_label) == bool(expected) else "N"
        rows.append(
            {
                "Evaluation ID": evaluation_id,
                "Message ID": item.get("datasetMessageId") or "",
                "Message": item.get("messageContent") or "",
                "Expected Label": _label_text(expected),
                "LLM Label": _label_text(llm_label),
                "Correct": correct,
                "Response Time (ms)": int(item.get("responseTimeMs") or 0),
                "Retry Count": int(item.get("retryCount") or 0),
                "Error": item.get("errorMessage") or "",
                "LLM Response": item.get("llmFullResponse") or "",
            }
        )
    return pd.DataFrame(rows, columns=list(RESULT_EXPORT_COLUMNS))
