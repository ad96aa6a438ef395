"""Exception hierarchy for the MAR-CCD driver."""


class MarCCDError(Exception):
    pass


class CommunicationError(MarCCDError):
    """Sending to or receiving from the marccd server failed."""


class ProtocolTimeout(CommunicationError):
    """No complete response line arrived within the per-call timeout."""


class FileCreationTimeout(MarCCDError):
    """No sufficiently recent image file appeared in time."""


class FileReadTimeout(MarCCDError):
    """The image file existed but never became a complete, valid TIFF."""


class TiffValidationError(MarCCDError):
    """The image file is not (yet) what we expect; always retried."""


class AcquisitionAborted(MarCCDError):
    """The operator stopped the acquisition."""
