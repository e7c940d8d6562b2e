"""Signal dispatching.

This package has no I/O dependencies. It is shared by the testkit
database and test-runner layers, which announce their lifecycle events
through the signals in dispatch.signals.
"""

from dispatch.dispatcher import NO_RECEIVERS, Signal, receiver

__all__ = ["NO_RECEIVERS", "Signal", "receiver"]
