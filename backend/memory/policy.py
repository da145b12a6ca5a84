import re

SHORT = "short"
MEDIUM = "medium"
LONG = "long"
CODE_HEAVY = "code_heavy"

_CODE_PATTERN = re.compile(
    r"```|[{;}()=>]|function\s+\w+|class\s+\w+|interface\s+\w+|type\s+\w+",
    re.IGNORECASE,
)
_SHORT_WORDS = 40
_LONG_WORDS = 200


def count_words(value: str) -> int:
    return len((value or "").split())


def is_code_heavy(value: str) -> bool:
    return bool(_CODE_PATTERN.search(value or ""))


def classify_turn_complexity(user_message: str, assistant_message: str) -> str:
    if is_code_heavy(user_message) or is_code_heavy(assistant_message):
        return CODE_HEAVY

    user_words = count_words(user_message)
    assistant_words = count_words(assistant_message)
    if user_words < _SHORT_WORDS and assistant_words < _SHORT_WORDS:
        return SHORT
    if user_words > _LONG_WORDS or assistant_words > _LONG_WORDS:
        return LONG
    return MEDIUM


def should_extract_diff(complexity: str) -> bool:
    # Short exchanges rarely establish durable facts.
    return complexity != SHORT
