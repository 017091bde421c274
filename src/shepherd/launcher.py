"""Launch wrapper: publish our PID, then become the worker.

    python -m shepherd.launcher -- worker --flag ...

exec keeps the PID, so the value written to the handoff file is the
worker's real PID no matter how many layers sit above this wrapper.
"""

import os
import sys
from pathlib import Path

from .config import ENV_HANDOFF_FILE, ENV_STATE_DIR
from .handoff import publish_pid


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] == "--":
        args = args[1:]
    if not args:
        print("usage: python -m shepherd.launcher -- COMMAND [ARGS...]", file=sys.stderr)
        return 2

    handoff = os.environ.get(ENV_HANDOFF_FILE)
    if not handoff:
        print(f"{ENV_HANDOFF_FILE} is not set", file=sys.stderr)
        return 2

    publish_pid(Path(handoff))
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        os.execvp(args[0], args)
    except OSError as e:
        print(f"cannot start {args[0]}: {e}", file=sys.stderr)
        state_dir = os.environ.get(ENV_STATE_DIR)
        if state_dir:
            # No useful work was done: let the supervisor drop this job's traces
            marker = Path(state_dir) / "no-work" / str(os.getpid())
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.touch()
        return 127
    return 0  # not reached


if __name__ == "__main__":
    sys.exit(main())
