# services/url_guard.py

from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Iterable, List, Optional
from urllib.parse import unquote, urlsplit, urlunsplit

from services.errors import InvalidURL

logger = logging.getLogger(__name__)

# 先頭の "scheme://" だけを見る。クエリ内の URL はスキームとみなさない。
_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.\-]*)://", re.IGNORECASE)

# "javascript:alert(1)" のようなスキーム付き入力を検出する。
# "example.com:8080/path" はポート指定なので除外する。
_BARE_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.\-]*):(?!\d+(?:[/?#]|$))", re.IGNORECASE)

_BLOCKED_HOSTNAMES = ("localhost",)


def validate_ip_address(address: str) -> bool:
    """
    IP アドレス文字列が外部公開アドレスかどうかを判定する。

    ループバック / プライベート / リンクローカル / 予約 / マルチキャスト /
    未指定アドレス、および IPv4-mapped IPv6 で包んだそれらはすべて False。
    """
    try:
        ip = ipaddress.ip_address(address.strip("[]"))
    except ValueError:
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if (
        ip.is_private
        or ip.is_loopback
        or ip.is_reserved
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_unspecified
    ):
        return False
    return ip.is_global


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def _has_traversal(path: str) -> bool:
    for candidate in (path, unquote(path)):
        if "../" in candidate or "/.." in candidate:
            return True
    return False


class UrlGuard:
    """
    解析対象 URL のバリデーションと正規化を行う。

    - スキーム無し → https:// を補完、http:// → https:// に書き換え
    - http/https 以外のスキームは拒否
    - パストラバーサル（../ や /..）を拒否
    - 許可ドメインリストが空でなければホストを照合
    - IP 直指定は外部公開アドレスのみ許可
    """

    def __init__(
        self,
        allowed_domains: Optional[Iterable[str]] = None,
        enforce_allowlist: bool = True,
        resolve_dns: bool = False,
    ) -> None:
        self.allowed_domains: List[str] = [
            d.strip().lower() for d in (allowed_domains or []) if d and d.strip()
        ]
        self.enforce_allowlist = enforce_allowlist
        self.resolve_dns = resolve_dns

    @classmethod
    def from_settings(cls, settings) -> "UrlGuard":
        return cls(
            allowed_domains=settings.allowed_domains,
            enforce_allowlist=settings.enforce_domain_allowlist,
            resolve_dns=settings.resolve_dns,
        )

    # ---------- 許可ドメイン ----------

    def is_allowed_domain(self, host: str) -> bool:
        """
        ホストが許可リストに一致するか。
        "*.example.com" は sub.example.com にだけ一致し、
        evilexample.com や example.com 自体には一致しない。
        """
        if not self.enforce_allowlist or not self.allowed_domains:
            return True

        host = host.lower().rstrip(".")
        for entry in self.allowed_domains:
            if entry.startswith("*."):
                suffix = entry[1:]  # ".example.com"
                if host.endswith(suffix) and len(host) > len(suffix):
                    return True
            elif host == entry:
                return True
        return False

    # ---------- メイン ----------

    def validate(self, raw_url: str) -> str:
        """URL を検証し、正規化済みの https URL を返す。不正なら InvalidURL。"""
        if raw_url is None or not str(raw_url).strip():
            raise InvalidURL(str(raw_url), "empty URL")

        candidate = str(raw_url).strip()

        scheme_match = _SCHEME_RE.match(candidate)
        if scheme_match:
            scheme = scheme_match.group(1).lower()
            if scheme not in ("http", "https"):
                raise InvalidURL(candidate, f"unsupported scheme '{scheme}'")
        else:
            match = _BARE_SCHEME_RE.match(candidate)
            if match:
                raise InvalidURL(candidate, f"unsupported scheme '{match.group(1).lower()}'")
            candidate = f"https://{candidate.lstrip('/')}"

        try:
            parts = urlsplit(candidate)
            port = parts.port
        except ValueError as e:
            raise InvalidURL(candidate, f"malformed URL ({e})") from e

        host = (parts.hostname or "").rstrip(".")
        if not host:
            raise InvalidURL(candidate, "missing host")
        if parts.username or parts.password:
            raise InvalidURL(candidate, "credentials are not allowed in URL")

        if _has_traversal(parts.path):
            raise InvalidURL(candidate, "path traversal detected")

        if host in _BLOCKED_HOSTNAMES or host.endswith(".localhost"):
            raise InvalidURL(candidate, "local hostnames are not allowed")

        # 許可リストは IP 直指定にも適用する
        if not self.is_allowed_domain(host):
            raise InvalidURL(candidate, f"domain '{host}' is not in the allowed list")
        if _is_ip_literal(host) and not validate_ip_address(host):
            raise InvalidURL(candidate, "IP address is not publicly routable")

        if self.resolve_dns and not _is_ip_literal(host):
            self._check_resolved_addresses(candidate, host)

        netloc = f"[{host}]" if ":" in host else host
        if port is not None:
            netloc = f"{netloc}:{port}"

        normalized = urlunsplit(("https", netloc, parts.path, parts.query, ""))
        logger.debug("[url_guard] accepted raw=%s normalized=%s", raw_url, normalized)
        return normalized

    def is_safe(self, url: str) -> bool:
        """validate() の真偽値版。リダイレクト先のチェックなどに使う。"""
        try:
            self.validate(url)
        except InvalidURL as e:
            logger.info("[url_guard] rejected url=%s reason=%s", url, e.reason)
            return False
        return True

    def _check_resolved_addresses(self, url: str, host: str) -> None:
        try:
            info = socket.getaddrinfo(host, None)
        except socket.gaierror as e:
            raise InvalidURL(url, f"host '{host}' could not be resolved") from e

        for _, _, _, _, sockaddr in info:
            if not validate_ip_address(str(sockaddr[0])):
                raise InvalidURL(url, f"host '{host}' resolves to a non-public address")
