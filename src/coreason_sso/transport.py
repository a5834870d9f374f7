# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
HTTP plumbing: an SSRF-guarded transport and a size-capped request helper.
"""

import ipaddress
import json
import socket
from dataclasses import dataclass
from typing import Any

import httpx

from coreason_sso.exceptions import OversizedResponseError, TechnicalAuthError
from coreason_sso.utils.logger import logger

MAX_RESPONSE_BYTES = 1_000_000


class SecurityError(TechnicalAuthError):
    """Raised when a request targets a blocked address."""


def _is_blocked(ip_obj: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        ip_obj.is_private
        or ip_obj.is_loopback
        or ip_obj.is_link_local
        or ip_obj.is_reserved
        or ip_obj.is_multicast
    )


class SafeHTTPTransport(httpx.HTTPTransport):
    """
    A secure HTTP transport that enforces DNS pinning to prevent SSRF/DNS Rebinding attacks.

    Endpoints such as `jwks_uri` come from a remote discovery document, so every
    request resolves its hostname, rejects private, loopback, link-local, reserved
    and multicast addresses, and connects to the first safe address while keeping the
    original Host header and SNI name for certificate verification.
    """

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        try:
            ip_obj = ipaddress.ip_address(hostname)
        except ValueError:
            ip_obj = None

        if ip_obj is not None:
            self._validate_ip(ip_obj, hostname)
            return super().handle_request(request)

        try:
            addr_infos = socket.getaddrinfo(hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {hostname}: {e}")
            raise SecurityError(f"DNS resolution failed for {hostname}") from e

        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            ip_str = str(sockaddr[0])
            try:
                candidate = ipaddress.ip_address(ip_str)
            except ValueError:
                continue
            if _is_blocked(candidate):
                logger.warning(f"Skipping blocked address {candidate} for {hostname}")
                continue
            target_ip = ip_str
            break

        if not target_ip:
            logger.error(f"Security violation: No valid public IP found for {hostname}")
            raise SecurityError(f"Security violation: No valid public IP found for {hostname}")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS Pinned: {hostname} -> {target_ip}")
        return super().handle_request(request)

    def _validate_ip(self, ip_obj: Any, hostname: str) -> None:
        if _is_blocked(ip_obj):
            logger.warning(f"Security violation: Blocked access to {hostname} ({ip_obj})")
            raise SecurityError(f"Access to {hostname} ({ip_obj}) is blocked")


@dataclass(frozen=True)
class BoundedResponse:
    """A fully read response whose body stayed within the size cap."""

    status_code: int
    content: bytes
    url: str

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decodes the body as JSON; raises ValueError when it is not JSON."""
        return json.loads(self.content)


def bounded_request(
    client: httpx.Client,
    method: str,
    url: str,
    max_bytes: int = MAX_RESPONSE_BYTES,
    **kwargs: Any,
) -> BoundedResponse:
    """
    Sends a request and reads the body, refusing bodies larger than `max_bytes`.

    Transport errors (`httpx.HTTPError`) propagate; status codes are not checked here.

    Raises:
        OversizedResponseError: If the declared or actual body size exceeds `max_bytes`.
    """
    with client.stream(method, url, **kwargs) as response:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            logger.error(f"Response from {url} declares {content_length} bytes, limit is {max_bytes}")
            raise OversizedResponseError(OversizedResponseError.message_key)

        content = bytearray()
        for chunk in response.iter_bytes():
            content.extend(chunk)
            if len(content) > max_bytes:
                logger.error(f"Response from {url} exceeded {max_bytes} bytes")
                raise OversizedResponseError(OversizedResponseError.message_key)

        return BoundedResponse(status_code=response.status_code, content=bytes(content), url=url)
