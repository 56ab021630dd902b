import json
import re
from typing import Any, List, Optional

_PAIRS = {"{": "}", "[": "]"}


class LLMResponseError(ValueError):
    pass


def strip_llm_reasoning_sections(text: str) -> str:
    s = str(text or "")
    if not s:
        return ""
    s = re.sub(r"(?is)<(think|analysis|reasoning)[^>]*>.*?</\1>", " ", s)
    s = re.sub(r"(?is)</?(think|analysis|reasoning)[^>]*>", " ", s)
    s = re.sub(r"(?is)```(?:think|thinking|analysis|reasoning)[^\n]*\n.*?```", " ", s)
    return s.strip()


def _balanced_from(s: str, start: int) -> Optional[str]:
    opener = s[start]
    closer = _PAIRS[opener]
    depth = 0
    in_str = False
    escaped = False
    for i in range(start, len(s)):
        ch = s[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return s[start : i + 1]
    return None


def extract_json_candidates(text: str) -> List[str]:
    s = (text or "").strip()
    if not s:
        return []
    out: List[str] = []
    fence = re.search(r"```(?:json)?\s*(.*?)\s*```", s, re.S | re.I)
    if fence and (fence.group(1) or "").strip():
        out.append(fence.group(1).strip())
    for i, ch in enumerate(s):
        if ch not in _PAIRS:
            continue
        cand = _balanced_from(s, i)
        if cand and cand not in out:
            out.append(cand)
            if len(out) >= 16:
                break
    if s not in out:
        out.append(s)
    return out


def parse_json_from_llm(text: str) -> Any:
    s = (text or "").strip()
    if not s:
        raise LLMResponseError("LLM did not return JSON")
    last_err: Optional[Exception] = None
    for source in (s, strip_llm_reasoning_sections(s)):
        for candidate in extract_json_candidates(source):
            try:
                parsed = json.loads(candidate)
            except ValueError as exc:
                last_err = exc
                continue
            if isinstance(parsed, (dict, list)):
                return parsed
    raise LLMResponseError(f"LLM response is not JSON: {last_err}")


def parse_json_dict_from_llm(text: str) -> dict:
    parsed = parse_json_from_llm(text)
    if not isinstance(parsed, dict):
        raise LLMResponseError("LLM JSON root must be an object")
    return parsed
