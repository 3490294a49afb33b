"""Pydantic models for peer discovery."""

from pydantic import BaseModel, Field

ADDRESS_SCHEME = "tcp://"


class PeerAddress(BaseModel):
    """A pairing address: `tcp://<host>:<port>|<deviceName>`."""
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    device_name: str = Field(min_length=1)

    @classmethod
    def parse(cls, text: str) -> "PeerAddress":
        """Parse a broadcast payload or QR string. Raises ValueError."""
        text = text.strip()
        if text.startswith(ADDRESS_SCHEME):
            text = text[len(ADDRESS_SCHEME):]

        connection, sep, device_name = text.partition("|")
        if not sep:
            raise ValueError(f"Missing '|' in address {text!r}")
        host, sep, port = connection.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Missing host:port in address {text!r}")
        if not port.isdigit():
            raise ValueError(f"Invalid port {port!r}")

        # pydantic's ValidationError is a ValueError
        return cls(host=host, port=int(port), device_name=device_name)

    def to_uri(self) -> str:
        return f"{ADDRESS_SCHEME}{self.host}:{self.port}|{self.device_name}"


class DiscoveredPeer(BaseModel):
    """A device seen on the LAN during the current discovery session."""
    address: PeerAddress
    first_seen: float  # Unix timestamp
    last_seen: float

    @property
    def device_name(self) -> str:
        return self.address.device_name
