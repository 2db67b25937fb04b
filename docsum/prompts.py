from typing import Dict, List

from .models import SamplingParams

SYSTEM_BASE = (
    "You are an AI assistant specialized in summarizing long regulatory and business documents. "
    "Use only the material you are given, keep a concise professional tone, and respond in clear English."
)

STAGE_TEMPLATES = {
    "chunk": (
        "Summarize the following section of a longer document in a few concise sentences. "
        "Use only information present in the text; do not add outside knowledge."
    ),
    "merge": (
        "Combine the partial summaries below into one coherent overview of the whole document. "
        "Keep every distinct point, remove repetition, preserve the original order, and use only the provided material."
    ),
    "continue": (
        "The summary below was cut off. Continue it exactly where it stops, without repeating what is already written, "
        "and finish the last sentence."
    ),
    "polish": (
        "Improve the phrasing and flow of the summary below without removing, adding or changing any content. "
        "Format it as clean Markdown without code blocks."
    ),
}

STAGE_PARAMS = {
    "chunk": SamplingParams(temperature=0.3, top_p=0.9, frequency_penalty=0.5, max_tokens=300),
    "merge": SamplingParams(temperature=0.25, top_p=0.9, frequency_penalty=0.5, max_tokens=1200),
    "continue": SamplingParams(temperature=0.2, top_p=0.9, max_tokens=600),
    "polish": SamplingParams(temperature=0.2, top_p=0.9, max_tokens=1500),
}


def _messages(stage: str, body: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": f"{SYSTEM_BASE} {STAGE_TEMPLATES[stage]}"},
        {"role": "user", "content": body},
    ]


def chunk_messages(text: str, index: int, total: int) -> List[Dict[str, str]]:
    return _messages("chunk", f"This is section {index + 1} of {total}.\nText:\n{text}\n---\nSummary:")


def merge_messages(joined: str) -> List[Dict[str, str]]:
    return _messages("merge", f"Partial summaries:\n{joined}\n---\nOverview:")


def continue_messages(text: str) -> List[Dict[str, str]]:
    return _messages("continue", f"Text:\n{text}\n---\nContinuation:")


def polish_messages(text: str) -> List[Dict[str, str]]:
    return _messages("polish", f"Text:\n{text}\n---\nRewritten summary:")
