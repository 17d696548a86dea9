"""Main entry point for running the personacord worker."""

import asyncio
import contextlib

import personacord.entrypoint
from personacord.core.error_handling import install_exception_hooks


def main() -> None:
    """Run the application entry point."""
    with asyncio.Runner() as runner:
        install_exception_hooks(runner.get_loop())
        try:
            runner.run(personacord.entrypoint.main())
        except KeyboardInterrupt:
            # Drain the worker pool before the event loop is torn down.
            with contextlib.suppress(KeyboardInterrupt):
                runner.run(personacord.entrypoint.shutdown())


if __name__ == "__main__":
    main()
