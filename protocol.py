import enum
from dataclasses import dataclass
from typing import List


DIGEST_LEN = 32
AUTH_CHALLENGE = "AUTH"
REPLY_OK = b"OK"
REPLY_AUTH_FAILED = b"Authentication failed"


# Defines the leading command codes an uploader sends over UDP
class Command(enum.IntEnum):
    FLASH = 0
    FILESYSTEM = 100
    AUTH = 200


UPDATE_COMMANDS = (Command.FLASH, Command.FILESYSTEM)


# Raised when a datagram does not match any expected message shape
class MalformedMessage(ValueError):
    pass


# Decodes a datagram as ASCII, drops the trailing newline and splits on single spaces
def split_fields(datagram: bytes) -> List[str]:
    try:
        text = datagram.decode("ascii")
    except UnicodeDecodeError as exc:
        raise MalformedMessage("Datagram is not ASCII text") from exc
    if text.endswith("\n"):
        text = text[:-1]
    return text.split(" ")


# Parses a decimal field, reporting the field name on failure
def _parse_int(value: str, name: str) -> int:
    if not value.isdigit():
        raise MalformedMessage(f"Invalid {name}: {value!r}")
    return int(value)


# Defines the initial update command: "<cmd> <tcpPort> <size> <digest>"
@dataclass
class UpdateCommand:
    kind: Command
    tcp_port: int
    size: int
    digest: str

    # Parses wire bytes into an UpdateCommand and validates every field
    @staticmethod
    def decode(datagram: bytes) -> "UpdateCommand":
        fields = split_fields(datagram)
        if len(fields) != 4:
            raise MalformedMessage(f"Expected 4 fields, got {len(fields)}")
        code = _parse_int(fields[0], "command")
        if code not in UPDATE_COMMANDS:
            raise MalformedMessage(f"Unknown update command: {code}")
        tcp_port = _parse_int(fields[1], "tcp port")
        if not 0 < tcp_port < 65536:
            raise MalformedMessage(f"TCP port out of range: {tcp_port}")
        size = _parse_int(fields[2], "size")
        if size <= 0:
            raise MalformedMessage("Size must be positive")
        if len(fields[3]) != DIGEST_LEN:
            raise MalformedMessage(f"Digest must be {DIGEST_LEN} characters")
        return UpdateCommand(Command(code), tcp_port, size, fields[3])


# Defines the authentication reply: "200 <cnonce> <response>"
@dataclass
class AuthResponse:
    cnonce: str
    response: str

    # Parses wire bytes into an AuthResponse; only the token and field lengths are checked
    @staticmethod
    def decode(datagram: bytes) -> "AuthResponse":
        fields = split_fields(datagram)
        if len(fields) != 3:
            raise MalformedMessage(f"Expected 3 fields, got {len(fields)}")
        if fields[0] != str(int(Command.AUTH)):
            raise MalformedMessage(f"Expected auth code {int(Command.AUTH)}, got {fields[0]!r}")
        if len(fields[1]) != DIGEST_LEN or len(fields[2]) != DIGEST_LEN:
            raise MalformedMessage(f"Auth fields must be {DIGEST_LEN} characters")
        return AuthResponse(fields[1], fields[2])


# Builds the challenge datagram sent when authentication is required
def build_auth_challenge(nonce: str) -> bytes:
    return f"{AUTH_CHALLENGE} {nonce}".encode("ascii")
