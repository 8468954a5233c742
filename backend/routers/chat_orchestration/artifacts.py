"""
Artifact extraction from assistant replies.

Fenced code blocks long enough to be worth recalling later are stored
as artifacts (schema, config, code or spec) so later turns can load
them by id instead of replaying the whole reply.
"""

import re
from collections import Counter
from typing import List, Optional

from services.chat_store import Artifact, Message, new_id

CODE_BLOCK_RE = re.compile(r"```([\w+-]+)?[ \t]*\n(.*?)```", re.DOTALL)
MIN_CONTENT_LENGTH = 80
SUMMARY_CHARS = 180
MAX_KEYWORDS = 8

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{3,31}")
_STOPWORDS = {
    "this", "that", "with", "from", "return", "self", "none", "true", "false",
    "const", "let", "var", "function", "import", "def", "class", "null", "type",
    "string", "value", "values", "name", "print", "else", "elif", "then", "when",
}


def infer_artifact_type(language: str, body: str) -> str:
    language = language.lower()
    lower = body.lower()
    if "json" in language and '"properties"' in body:
        return "schema"
    if "yaml" in language or "yml" in language:
        return "config"
    if "sql" in language:
        return "code"
    if "schema" in lower and "{" in body:
        return "schema"
    if "requirements" in lower or "#" in body:
        return "spec"
    return "code"


def artifact_title(artifact_type: str, language: str) -> str:
    label = artifact_type.capitalize()
    return f"{label} ({language.upper()})" if language else f"{label} artifact"


def artifact_summary(body: str) -> str:
    return " ".join(body.split())[:SUMMARY_CHARS]


def artifact_keywords(body: str, language: str = "") -> List[str]:
    """Most frequent identifiers in the block, language first."""
    counts = Counter(w.lower() for w in _WORD_RE.findall(body) if w.lower() not in _STOPWORDS)
    keywords = [language.lower()] if language else []
    for word, _ in counts.most_common(MAX_KEYWORDS):
        if word not in keywords:
            keywords.append(word)
    return keywords[:MAX_KEYWORDS]


def extract_artifacts(message: Message, topic_id: Optional[str] = None) -> List[Artifact]:
    """Build (unsaved) artifacts for each qualifying code block in an assistant message."""
    text = message.content or ""
    if "```" not in text:
        return []

    artifacts = []
    for match in CODE_BLOCK_RE.finditer(text):
        language = (match.group(1) or "").lower()
        body = (match.group(2) or "").strip()
        if len(body) < MIN_CONTENT_LENGTH:
            continue
        artifact_type = infer_artifact_type(language, body)
        artifacts.append(
            Artifact(
                id=new_id(),
                conversation_id=message.conversation_id,
                topic_id=topic_id if topic_id is not None else message.topic_id,
                created_by_message_id=message.id,
                type=artifact_type,
                title=artifact_title(artifact_type, language),
                summary=artifact_summary(body),
                keywords=artifact_keywords(body, language),
                content=body,
            )
        )
    return artifacts
