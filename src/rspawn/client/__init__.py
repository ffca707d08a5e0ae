"""Client side of rspawn: sends the invocation and relays stdio."""

from rspawn.client.relay import ClientRelay, RelayError, StdinReader, open_relay

__all__ = ["ClientRelay", "RelayError", "StdinReader", "open_relay"]
