import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

from coding_agent.agent.session import run_agent
from coding_agent.config import AgentSettings
from coding_agent.errors import AgentError


DEFAULT_PROMPT = "Explore https://checklyhq.com"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="coding_agent",
        description="Run the sandbox coding agent once and print its answer.",
    )
    parser.add_argument("prompt", nargs="?", default=DEFAULT_PROMPT, help="instruction for the agent")
    parser.add_argument("--repo-url", default=None, help="git repository to clone into the sandbox")
    parser.add_argument("--model", default=None, help="model identifier override")
    parser.add_argument("--max-steps", type=int, default=None, help="step bound override")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv(os.path.join(os.getcwd(), ".env.local"), override=False)
    load_dotenv(os.path.join(os.getcwd(), ".env"), override=False)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    update: dict[str, object] = {}
    if args.model:
        update["model"] = args.model
    if args.max_steps:
        update["max_steps"] = args.max_steps
    settings = AgentSettings.from_env().model_copy(update=update)

    try:
        result = asyncio.run(run_agent(args.prompt, args.repo_url, settings=settings))
    except AgentError as e:
        logging.getLogger("coding_agent").error("run failed: %s", e)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
