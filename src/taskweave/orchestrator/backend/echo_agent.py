"""Local deterministic agent for CLI backend integration tests and smoke runs.

Planning instructions (with a ``## Request`` section) are answered with one
independent task per ``;``-separated clause of the request. Any other
instruction is acknowledged with the completion block workers are asked for.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument(
        "--fail-on",
        default=None,
        help="Exit with an error when the instruction contains this text.",
    )
    args = parser.parse_args(argv)

    instruction = Path(args.prompt_file).read_text("utf-8")
    if args.fail_on and args.fail_on in instruction:
        print(f"echo_agent: refusing instruction containing {args.fail_on!r}", file=sys.stderr)
        return 2

    request = _section(instruction, "## Request")
    if request is not None:
        clauses = [clause.strip() for clause in request.split(";") if clause.strip()]
        for index, clause in enumerate(clauses, start=1):
            print(f"{index}. {clause} | DEPENDS: none | OUTPUTS: {clause}")
        return 0

    task = _section(instruction, "## Your task") or instruction.strip()
    first_line = task.splitlines()[0] if task else ""
    print("TASK_COMPLETE")
    print(f"Summary: echoed {first_line!r}")
    print("Files: none")
    return 0


def _section(text: str, heading: str) -> str | None:
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if not line.strip().startswith(heading):
            continue
        body: list[str] = []
        for follow in lines[index + 1 :]:
            if follow.startswith("## "):
                break
            body.append(follow)
        return "\n".join(body).strip()
    return None


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
