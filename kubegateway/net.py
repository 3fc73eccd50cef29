"""Host and port helpers."""

from __future__ import annotations


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into host and port.

    Raises ValueError for addresses without a port or with a malformed form.
    """
    colon = hostport.rfind(":")
    if colon < 0:
        raise ValueError(f"address {hostport}: missing port in address")

    host_start, host_end_search = 0, 0
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        if end + 1 == len(hostport):
            raise ValueError(f"address {hostport}: missing port in address")
        if end + 1 != colon:
            if hostport[end + 1] == ":":
                raise ValueError(f"address {hostport}: too many colons in address")
            raise ValueError(f"address {hostport}: missing port in address")
        host = hostport[1:end]
        host_start, host_end_search = 1, end + 1
    else:
        host = hostport[:colon]
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons in address")

    if "[" in hostport[host_start:]:
        raise ValueError(f"address {hostport}: unexpected '[' in address")
    if "]" in hostport[host_end_search:]:
        raise ValueError(f"address {hostport}: unexpected ']' in address")
    return host, hostport[colon + 1:]


def host_without_port(hostport: str) -> str:
    """Return the lower-cased host part of ``hostport``.

    If the value carries no valid port, it is returned lower-cased as a whole.
    """
    hostport = hostport.lower()
    try:
        host, _ = _split_host_port(hostport)
    except ValueError:
        return hostport
    return host