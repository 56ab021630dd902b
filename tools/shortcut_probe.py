import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional, Sequence

from analyst_pipelines.lib.blocks import blocks_to_payload
from analyst_pipelines.lib.dataset import TabularDataset, load_dataset_bytes
from analyst_pipelines.shortcut_router.shortcut_router import ShortcutRouter


def _read_questions(args: argparse.Namespace) -> List[str]:
    questions = [q for q in (args.question or []) if str(q or "").strip()]
    if args.questions_file:
        with open(args.questions_file, "r", encoding="utf-8") as f:
            questions.extend(line.strip() for line in f if line.strip())
    return questions


def probe(router: ShortcutRouter, dataset: TabularDataset, question: str, with_blocks: bool) -> Dict[str, Any]:
    hit = router.match(question, dataset)
    if hit is None:
        return {"question": question, "status": "miss"}
    out: Dict[str, Any] = {
        "question": question,
        "status": "hit",
        "intent_id": hit.intent_id,
        "args": hit.args,
        "pattern_index": hit.pattern_index,
        "missing_columns": hit.missing_columns,
    }
    if with_blocks:
        out["blocks"] = blocks_to_payload(hit.blocks)
    return out


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run questions through the local intent matcher against a CSV/XLSX file and print hit/miss JSON."
    )
    parser.add_argument("--data", required=True, help="Path to a CSV, TSV or XLSX file.")
    parser.add_argument("--question", "-q", action="append", help="Question to probe; may be repeated.")
    parser.add_argument("--questions-file", default="", help="File with one question per line.")
    parser.add_argument("--max-rows", type=int, default=None, help="Read at most this many data rows.")
    parser.add_argument("--blocks", action="store_true", help="Include rendered blocks for hits.")
    args = parser.parse_args(argv)

    if not os.path.exists(args.data):
        print(f"Data file not found: {args.data}", file=sys.stderr)
        return 2
    try:
        with open(args.data, "rb") as f:
            raw = f.read()
        dataset = load_dataset_bytes(raw, os.path.basename(args.data), "", args.max_rows)
    except Exception as exc:
        print(f"Cannot read {args.data}: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 2

    questions = _read_questions(args)
    if not questions:
        print("No questions given.", file=sys.stderr)
        return 2

    router = ShortcutRouter()
    misses = 0
    for question in questions:
        result = probe(router, dataset, question, args.blocks)
        if result["status"] == "miss":
            misses += 1
        print(json.dumps(result, ensure_ascii=False))
    print(f"hits={len(questions) - misses} misses={misses}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
