import re
from typing import List, Pattern

QUOTE_CHARS = "\"'`“”‘’「」«»"

_OPEN_Q = r"[\"'`“‘「«]"
_CLOSE_Q = r"[\"'`”’」»]"
_QUOTED = _OPEN_Q + r"[^\"'`“”‘’「」«»]+" + _CLOSE_Q

EN_COL = rf"(?:{_QUOTED}|[\w\-]+)"
# Single-column captures: a whole token that is not a filler noun.
_FILLER = r"(?:the|a|an|all|each|every|values?|data|rows?|records?|entries|items)(?![\w\-])"
EN_TARGET_COL = rf"(?:{_QUOTED}|(?!{_FILLER})[\w\-]+(?![\w\-]))"
# "distribution of X by Y" is a grouped question, not a single-column one.
_UNGROUPED = r"(?!\s+(?:by|per|across|against|versus|vs\.?)\b)"
EN_VALUE = rf"(?:{_QUOTED}|[^\"'`“”‘’\s][^\"'`“”‘’]*?)"
ZH_COL = rf"(?:{_QUOTED}|[^\s\"'`“”‘’「」«»，,。？?！!：:]+?)"
ZH_PREFIX = (
    r"^\s*(?:请|帮我|麻烦)?\s*"
    r"(?:计算|统计|查看|显示|展示|给出|生成|列出|看看|分析)?\s*(?:一下)?\s*(?:数据中|表中)?\s*"
)
ZH_RATIO = r"(?:百分比|比例|占比|比率)"

CONTAINMENT_PATTERNS: List[Pattern[str]] = [
    re.compile(
        r"\b(?:percentage|percent|share|ratio|proportion)\s+of\s+"
        r"(?:rows\s+(?:where|in\s+which)\s+)?(?:the\s+)?"
        rf"(?P<a>{EN_COL})(?:\s+values?)?\s+(?:that\s+|which\s+)?"
        r"(?:contains?|containing|includes?|including)\s+(?:the\s+)?"
        rf"(?P<b>{EN_COL})",
        re.I,
    ),
    re.compile(
        ZH_PREFIX
        + rf"(?P<a>{ZH_COL})\s*(?:列)?\s*(?:中|里)?\s*包含\s*(?P<b>{ZH_COL})\s*(?:列)?\s*的?\s*(?:行\s*的?\s*)?{ZH_RATIO}",
        re.I,
    ),
]

VALUE_PERCENTAGE_PATTERNS: List[Pattern[str]] = [
    re.compile(
        r"\b(?:what\s+is|what's|calculate|find|show|get)\s+(?:the\s+)?(?:percentage|percent|share)\s+of\s+"
        rf"(?P<value>{EN_VALUE})\s+in\s+(?:the\s+)?(?P<column>{EN_COL})",
        re.I,
    ),
    re.compile(
        r"\bwhat\s+(?:percentage|percent|share)\s+of\s+(?:the\s+)?"
        rf"(?P<column>{EN_COL})\s+(?:values?\s+)?(?:is|are|equals?)\s+(?P<value>{EN_COL})",
        re.I,
    ),
    re.compile(
        ZH_PREFIX + rf"(?P<value>{ZH_COL})\s*在\s*(?P<column>{ZH_COL})\s*(?:列)?\s*(?:中|里)\s*的?\s*{ZH_RATIO}",
        re.I,
    ),
]

UNIQUE_COUNT_PATTERNS: List[Pattern[str]] = [
    re.compile(
        r"\b(?:count|number)\s+of\s+(?:unique|distinct)\s+"
        r"(?:values\s+(?:in|of)\s+|records\s+for\s+)?(?:the\s+)?"
        rf"(?P<column>{EN_TARGET_COL})",
        re.I,
    ),
    re.compile(
        r"\bcount\s+(?:the\s+)?(?:unique|distinct)\s+"
        r"(?:values?\s+(?:in|of)\s+|records\s+for\s+|of\s+)?(?:the\s+)?"
        rf"(?P<column>{EN_TARGET_COL})",
        re.I,
    ),
    re.compile(
        rf"\b(?:unique|distinct)\s+(?:values?\s+)?count\s+(?:of|for|in)\s+(?:the\s+)?(?P<column>{EN_TARGET_COL})",
        re.I,
    ),
    re.compile(
        r"\bhow\s+many\s+(?:unique|distinct|different)\s+values\s+(?:does|do)\s+(?:the\s+)?"
        rf"(?P<column>{EN_TARGET_COL})\s+(?:column\s+)?have\b",
        re.I,
    ),
    re.compile(
        r"\bhow\s+many\s+(?:unique|distinct)\s+"
        r"(?:values\s+(?:are\s+there\s+|are\s+|exist\s+)?(?:in|of)\s+(?:the\s+)?)?"
        rf"(?P<column>{EN_TARGET_COL})",
        re.I,
    ),
    re.compile(
        ZH_PREFIX + rf"(?P<column>{ZH_COL})\s*(?:列)?\s*的?\s*(?:唯一值|不同值|不重复值)\s*的?\s*(?:数量|个数|计数)",
        re.I,
    ),
    re.compile(
        rf"有多少(?:个|种)?\s*(?:不同|唯一|不重复)的?\s*(?P<column>{ZH_COL})\s*(?:[？?。！!]|$)",
        re.I,
    ),
    re.compile(
        ZH_PREFIX + rf"(?P<column>{ZH_COL})\s*(?:列)?\s*(?:中|里)?\s*有多少(?:个|种)?\s*(?:不同|唯一|不重复)的?\s*值",
        re.I,
    ),
]

DISTRIBUTION_PATTERNS: List[Pattern[str]] = [
    re.compile(
        r"\b(?:show|get|calculate|find|create|generate|give|display|plot)\s+(?:me\s+)?(?:the\s+|a\s+)?"
        r"(?:distribution|breakdown|summary)\s+of\s+(?:the\s+)?(?:values\s+(?:in|of)\s+(?:the\s+)?)?"
        rf"(?P<column>{EN_TARGET_COL}){_UNGROUPED}",
        re.I,
    ),
    re.compile(
        r"\b(?:distribution|breakdown)\s+of\s+(?:the\s+)?(?:values\s+(?:in|of)\s+(?:the\s+)?)?"
        rf"(?P<column>{EN_TARGET_COL}){_UNGROUPED}",
        re.I,
    ),
    re.compile(
        ZH_PREFIX + rf"(?P<column>{ZH_COL})\s*(?:列)?\s*的?\s*(?:分布|构成)",
        re.I,
    ),
]


def strip_quotes(text: str) -> str:
    s = (text or "").strip()
    prev = None
    while s and s != prev:
        prev = s
        s = s.strip(QUOTE_CHARS).strip()
    return s


def normalize_question(text: str) -> str:
    s = (text or "").replace("\r\n", " ").replace("\n", " ").strip()
    return re.sub(r"\s+", " ", s)
