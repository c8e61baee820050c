"""Error taxonomy for template resolution and form filling.

Every error carries a stable ``code`` so CLI output and fill reports can be
matched without parsing messages. Field-level errors are collected as
warnings; template-level errors end the current strategy attempt.
"""


class FormFillError(Exception):
    """Base class for all form-filling errors."""

    code = "FORM_FILL_ERROR"

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.details = details

    def to_dict(self):
        entry = {"code": self.code, "message": str(self)}
        if self.details:
            entry["details"] = self.details
        return entry


# ---------------------------------------------------------------------------
# Template-level
# ---------------------------------------------------------------------------

class TemplateUnreadableError(FormFillError):
    """The template PDF could not be parsed."""

    code = "TEMPLATE_UNREADABLE"


class EmptyOrImageOnlyPdfError(TemplateUnreadableError):
    """The template has no extractable text (empty or scanned image)."""

    code = "EMPTY_OR_IMAGE_ONLY_PDF"


class TemplateProcessingTimeout(FormFillError):
    """Template processing exceeded its time limit."""

    code = "TEMPLATE_PROCESSING_TIMEOUT"


class TemplateAlignmentError(FormFillError):
    """Template alignment failed, please use the provided template."""

    code = "TEMPLATE_ALIGNMENT"


class InsufficientAnchorsError(TemplateAlignmentError):
    """Fewer than three reference anchors were found on the template."""

    code = "INSUFFICIENT_ANCHORS"


class InsufficientCorrespondenceError(InsufficientAnchorsError):
    """An affine fit needs at least three point correspondences."""

    code = "INSUFFICIENT_CORRESPONDENCE"


class DegenerateCorrespondenceError(TemplateAlignmentError):
    """The point correspondences are collinear or otherwise singular."""

    code = "DEGENERATE_CORRESPONDENCE"


class AlignmentTooImpreciseError(TemplateAlignmentError):
    """The affine fit residual is above the accepted limit."""

    code = "ALIGNMENT_TOO_IMPRECISE"


class TemplateMismatchError(FormFillError):
    """The template does not match the pinned reference template."""

    code = "TEMPLATE_MISMATCH"


class StrategyUnavailableError(FormFillError):
    """The resolution strategy does not apply to this template."""

    code = "STRATEGY_UNAVAILABLE"


class NoUsableStrategyError(FormFillError):
    """No resolution strategy could place the form fields."""

    code = "NO_USABLE_STRATEGY"


# ---------------------------------------------------------------------------
# Field-level (reported as warnings)
# ---------------------------------------------------------------------------

class AnchorDriftError(FormFillError):
    """A cached label anchor moved or disappeared on the current template."""

    code = "ANCHOR_DRIFT"


class FieldNotFoundError(FormFillError):
    """A data key has no matching form field."""

    code = "FIELD_NOT_FOUND"


class SignatureEmbedFailure(FormFillError):
    """The signature image could not be decoded or embedded."""

    code = "SIGNATURE_EMBED_FAILURE"


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------

class UnknownFieldKeyError(FormFillError):
    """A field key is not part of the form's canonical field set."""

    code = "UNKNOWN_FIELD_KEY"
