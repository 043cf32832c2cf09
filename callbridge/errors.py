"""
Exception hierarchy for callbridge.

The session engine handles each family differently: transport faults end
only the affected call, backend faults fall back to an apology utterance and
keep the call alive, provisioning faults are reported to the HTTP caller.
"""


class CallBridgeError(Exception):
    """Base class for all callbridge errors."""


class TransportError(CallBridgeError):
    """The media connection to the telephony side is unusable."""


class BackendInitError(CallBridgeError):
    """A voice backend could not be brought up for a call."""


class BackendReplyError(CallBridgeError):
    """A voice backend failed while producing a reply."""


class ProvisioningError(CallBridgeError):
    """A call could not be placed or provisioned."""
