"""Local stand-in agent for CLI executor and worker integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt heading, optionally failing or stalling on request."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--model", default="")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--message", default="")
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    heading = next((line for line in prompt.splitlines() if line.strip()), "")
    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)
    print(f"echo-agent model={args.model or '-'}: {heading}")
    if args.message:
        print(args.message, file=sys.stderr)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
