"""Entry point for the git pull agent."""

import asyncio

from git_pull_agent.server import run_server


def main() -> None:
    """Start the git pull agent server."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
