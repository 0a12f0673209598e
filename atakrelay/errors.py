#
# Error taxonomy. Every failure of a submission ends up as one of these,
# each with a kind (machine readable) and a detail (fit for display).
#

import enum


class ErrorKind(str, enum.Enum):
    # Caller input defects
    MISSING_PAYLOAD = 'missing_payload'
    MISSING_TARGETS = 'missing_targets'
    MISSING_FIELD = 'missing_field'
    MISSING_LOCATION = 'missing_location'
    MISSING_IMAGE = 'missing_image'
    INVALID_IMAGE_TYPE = 'invalid_image_type'
    IMAGE_TOO_LARGE = 'image_too_large'
    # Collaborator failure
    IMAGE_UPLOAD_FAILED = 'image_upload_failed'
    # Broker or transport failure
    CONNECT_FAILED = 'connect_failed'
    PUBLISH_FAILED = 'publish_failed'
    TIMEOUT = 'timeout'
    INTERNAL_ERROR = 'internal_error'


class ConfigError(Exception):
    "Invalid or missing configuration, raised at startup"


class RelayError(Exception):
    "Base for all errors that map to a submission result"

    def __init__(self, kind, detail, cause=None):
        super().__init__(detail)
        self.kind = ErrorKind(kind)
        self.detail = detail
        self.cause = cause

    def __repr__(self):
        return "{}({}, {!r})".format(type(self).__name__, self.kind.name, self.detail)


class ValidationError(RelayError):
    "Caller input defect, never retried"

    def __init__(self, kind, detail, index=None, field=None):
        super().__init__(kind, detail)
        self.index = index
        self.field = field

    @classmethod
    def missing_field(cls, index, field):
        return cls(ErrorKind.MISSING_FIELD,
                   "Target {} missing required field: {}".format(index, field),
                   index=index, field=field)


class SubmissionError(RelayError):
    "Collaborator failure while handling a submission"


class PublishError(RelayError):
    "Broker or transport failure, single attempt so not retried here"

    def __init__(self, kind, detail, cause=None):
        # Surface underlying cause text when available
        if cause is not None and str(cause):
            detail = "{}: {}".format(detail, cause)
        super().__init__(kind, detail, cause=cause)
