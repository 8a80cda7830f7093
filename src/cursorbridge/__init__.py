"""OpenAI-compatible chat completions on top of Cursor's StreamChat service."""

__version__ = "0.1.0"

from .config import Settings, load_config
from .api import create_app
from .errors import (
    BridgeError,
    EncodingError,
    InvalidCredentialError,
    StreamProtocolError,
    TransportError,
    TransportTimeoutError,
    UpstreamError,
    UpstreamRejection,
)

from .encoder import MessageEncoder, decode_request, encode
from .checksum import ChecksumGenerator, checksum, normalize_credential, select_credential
from .decoder import StreamDecoder
from .assembler import ResponseAssembler, strip_vendor_artifacts
from .streaming import CancellationToken, decode_stream
