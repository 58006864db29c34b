"""
Exceptions raised by the session core.

Everything derives from SessionError so callers at the session boundary
can catch a single type.
"""


class SessionError(Exception):
    """Base class for session failures."""

    hint = "Something went wrong with the session."


class MediaAcquisitionFailure(SessionError):
    """Local camera / microphone could not be opened."""

    hint = "Could not access camera and microphone. Check device permissions."


class SignalingFailure(SessionError):
    """The rendezvous service could not be reached or refused the token."""

    hint = "Could not reach the rendezvous service."


class PeerUnavailable(SignalingFailure):
    """No host is listening on the requested room token."""

    hint = (
        "Could not connect to the host. Please check the room token "
        "and make sure the host is waiting."
    )


class ChannelNotOpen(SessionError):
    """A message was sent before the data channel opened (or after it closed)."""

    hint = "Not connected to a peer yet."


class FileTooLarge(SessionError):
    """The file exceeds MAX_FILE_SIZE and was not sent."""

    hint = "File is too large to send."


class ProtocolError(SessionError):
    """A payload could not be decoded or framed."""

    hint = "Received a malformed message."


class FrameTooLarge(ProtocolError):
    """An outgoing message does not fit in one frame and was not sent."""

    hint = "Message is too large for the connection."
