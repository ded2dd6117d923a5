class RouletteError(Exception):
    pass


class InvalidStateError(RouletteError):
    """
    A negotiation step was attempted in a signaling state which does not
    allow it.
    """


class MediaAcquisitionError(RouletteError):
    """
    Local media (camera, microphone or screen) could not be captured.
    """


class SignalingError(RouletteError):
    pass
