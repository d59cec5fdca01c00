import os
import sys


if __name__ == "__main__":
    # Log to the terminal when started by hand; config is read on first import.
    if os.environ.get("LIVECAST_CONSOLE") is None and sys.stdout is not None and sys.stdout.isatty():
        os.environ["LIVECAST_CONSOLE"] = "1"
    from livecast.server import run

    run()
