"""Stand-in for ``cloudflared tunnel run`` used by the connector tests.

Usage: ``python fake_cloudflared.py <scenario> [delay] [cloudflared args...]``

Scenarios:

* ``register`` - announce a connector id on stderr after *delay* seconds;
* ``stdout``   - same, but on stdout;
* ``stubborn`` - ignore SIGTERM, then register;
* ``exit``     - complain about the token and exit with status 3;
* ``silent``   - never register.
"""

import os
import signal
import sys
import time

REGISTERED = "INF Registered tunnel connection connectorID=abc-123 connIndex=0 location=test"


def main(argv: list) -> int:
    scenario = argv[1] if len(argv) > 1 else "register"
    delay = float(argv[2]) if len(argv) > 2 else 0.05
    token_present = bool(os.environ.get("TUNNEL_TOKEN"))

    if scenario == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    print(
        f"INF Starting tunnel pid={os.getpid()} args={' '.join(argv[3:])} "
        f"token_present={token_present}",
        file=sys.stderr,
        flush=True,
    )

    if scenario == "exit":
        print("ERR Provided Tunnel token is not valid.", file=sys.stderr, flush=True)
        return 3

    if scenario in ("register", "stdout", "stubborn"):
        time.sleep(delay)
        stream = sys.stdout if scenario == "stdout" else sys.stderr
        print(REGISTERED, file=stream, flush=True)

    while True:
        time.sleep(0.1)


if __name__ == "__main__":
    sys.exit(main(sys.argv))
