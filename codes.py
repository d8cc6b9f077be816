import re
import random
import string
from typing import Dict, List, Optional, Sequence, Tuple

from schemas import LinkRecord

SHORT_CODE_LENGTH = 6
ALPHABET = string.ascii_letters + string.digits
CUSTOM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,20}$")

INVALID_CODE_MESSAGE = "Custom code must be 3-20 characters (letters, numbers, _, -)"
TAKEN_CODE_MESSAGE = "This custom code is already taken"


def generate_code(length=SHORT_CODE_LENGTH) -> str:
    return ''.join(random.choices(ALPHABET, k=length))


def is_valid_custom_code(code: Optional[str]) -> bool:
    """Empty means no custom code was requested, which is valid."""
    if code is None or code == "":
        return True
    if not isinstance(code, str):
        return False
    return CUSTOM_CODE_PATTERN.fullmatch(code) is not None


def is_code_unique(code: str, existing: Sequence[LinkRecord]) -> bool:
    return not any(record.short_code == code for record in existing)


def check_custom_code(code: Optional[str], existing: Sequence[LinkRecord]) -> List[str]:
    """Return every problem with a requested custom code, empty if it can be used."""
    if code is None or code == "":
        return []
    problems = []
    if not is_valid_custom_code(code):
        problems.append(INVALID_CODE_MESSAGE)
    if not is_code_unique(code, existing):
        problems.append(TAKEN_CODE_MESSAGE)
    return problems


def allocate_code(custom_code: Optional[str], existing: Sequence[LinkRecord]) -> Tuple[Optional[str], Dict[str, List[str]]]:
    """Pick the short code for a new link.

    Returns `(code, errors)`. A custom code is used verbatim when it passes
    `check_custom_code`; otherwise `errors` holds the messages under
    `customCode` and `code` is None.

    Generated codes are retried until one is not in `existing`. The loop has
    no iteration cap: the 62**6 code space against at most a handful of live
    links makes a collision rare, and returning a duplicate is never allowed.
    """
    if custom_code:
        problems = check_custom_code(custom_code, existing)
        if problems:
            return None, {"customCode": problems}
        return custom_code, {}
    while True:
        code = generate_code()
        if is_code_unique(code, existing):
            return code, {}
