from .envelope import (
    PROTOCOL_VERSION,
    RESERVED_PREFIX,
    ControlType,
    EnvelopeKind,
    Envelope,
    build_envelope,
    build_response,
    build_control,
    decode_envelope,
    is_reserved_type,
    )
from .message_types import (
    MessageTypeRegistry,
    MessageTypeSpec,
    check_application_type,
    )
from .validation import (
    SchemaValidator,
    JsonSchemaValidator,
    validate_against,
    )
