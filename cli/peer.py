# peer.py
"""
Bench stand-in for the controller: listen on the telemetry port, print what
the vision node reports, and command a fixed mode.
"""
from __future__ import annotations

import logging
import sys

from retro_vision.common import Mode
from retro_vision.controller import ControllerResponder
from retro_vision.protocol import make_codec

PORT = 5800
CODEC = "angle"            # Must match MeasurementConfig.variant on the node
COMMANDED_MODE = Mode.TRACKING_A


def main() -> None:
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        stream=sys.stdout,
    )
    with ControllerResponder(port=PORT, codec=make_codec(CODEC), mode=COMMANDED_MODE) as peer:
        try:
            peer.serve_forever()
        except KeyboardInterrupt:
            logging.getLogger("retro_vision.peer").info(
                "Stopped after %d requests (%d rejected)", peer.requests, peer.rejected
            )


if __name__ == "__main__":
    main()
