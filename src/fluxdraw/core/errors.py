"""Error taxonomy for the generation pipeline.

Every failure a generation run can end with is a subclass of
:class:`GenerationError`.  The class name doubles as the ``kind`` string
reported to observers through ``on_error(kind, message)``.

=====================  ==================================================
Error                  Raised when
=====================  ==================================================
InvalidParameter       Local parameter validation fails (never reaches
                       the model)
ProvisioningError      Model weights cannot be downloaded or located
DenoisingError         A denoising step fails mid-loop
ShapeError             The latent unpack precondition is violated
DecodeError            The model's decode call fails
Busy                   A run is requested while another one is active
GenerationCancelled    The caller cancelled the run
=====================  ==================================================
"""


class GenerationError(Exception):
    """Base class for all generation pipeline errors."""

    @property
    def kind(self) -> str:
        """Short name used when reporting this error to observers."""
        return type(self).__name__


class InvalidParameter(GenerationError, ValueError):
    """User-supplied generation parameters are out of range.

    The message is intended to be displayed directly to the user.
    """


class ProvisioningError(GenerationError):
    """Model artifacts could not be downloaded or found in the cache."""


class DenoisingError(GenerationError):
    """A denoising step failed or the step sequence was malformed."""


class ShapeError(GenerationError, ValueError):
    """A latent tensor does not have the layout the unpack transform requires."""


class DecodeError(GenerationError):
    """Decoding latents into pixels failed."""


class Busy(GenerationError):
    """A generation is already running on this controller."""


class GenerationCancelled(GenerationError):
    """The run was cancelled through its cancellation token."""
