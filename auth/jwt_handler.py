"""
JWT (JSON Web Token) minting and verification.

Supports:
- Access, refresh, MFA challenge and MFA setup tokens
- Key rotation: tokens carry a key id; the previous key verifies for a
  bounded grace period after startup
- Expiry checked against the injected clock
"""
import hashlib
import logging
import secrets
from enum import Enum
from typing import Dict, List, Optional, Type

import jwt
from pydantic import BaseModel, Field, ValidationError

from auth.clock import Clock, RequestContext, check_deadline

logger = logging.getLogger(__name__)


class TokenKind(str, Enum):
    """Token classes; a token is only accepted where its kind is expected."""
    ACCESS = "access"
    REFRESH = "refresh"
    CHALLENGE = "challenge"
    MFA_SETUP = "mfa_setup"


class TokenError(Exception):
    """Token verification failure."""

    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    WRONG_KIND = "wrong_kind"
    MALFORMED = "malformed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Token rejected: {reason}")


class JWTConfig(BaseModel):
    """JWT configuration."""

    signing_key_current: str = Field(
        ...,
        description="Secret key for signing tokens (use strong random string in production)"
    )
    signing_key_previous: Optional[str] = Field(
        default=None,
        description="Previous key, accepted for verification during the grace period"
    )
    signing_key_grace_seconds: int = Field(
        default=24 * 60 * 60,
        description="Seconds after startup the previous key keeps verifying"
    )
    algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm"
    )
    access_ttl_seconds: int = Field(
        default=15 * 60,
        le=15 * 60,
        description="Access token lifetime"
    )
    refresh_ttl_seconds: int = Field(
        default=30 * 24 * 60 * 60,
        le=30 * 24 * 60 * 60,
        description="Refresh token lifetime"
    )
    challenge_ttl_seconds: int = Field(
        default=10 * 60,
        description="MFA challenge and setup token lifetime"
    )
    issuer: str = Field(
        default="identity-core",
        description="Token issuer"
    )
    audience: str = Field(
        default="identity-core-api",
        description="Token audience"
    )


class TokenClaims(BaseModel):
    """Claims common to every token."""

    sub: str = Field(description="Subject (principal_id)")
    kind: TokenKind = Field(description="Token class")
    jti: str = Field(description="Unique token id")

    # Standard JWT claims
    exp: int = Field(description="Expiration time (Unix timestamp)")
    iat: int = Field(description="Issued at (Unix timestamp)")
    iss: str = Field(description="Issuer")
    aud: str = Field(description="Audience")


class AccessClaims(TokenClaims):
    """Access token claims."""

    role: str = Field(description="Principal role at issue time")
    sid: str = Field(description="Session the token belongs to")
    epoch: int = Field(description="Credential epoch at issue time")


class RefreshClaims(TokenClaims):
    """Refresh token claims."""

    family: str = Field(description="Refresh family id")
    version: int = Field(description="Position within the family")
    sid: str = Field(description="Session the family belongs to")


class ChallengeClaims(TokenClaims):
    """MFA challenge claims."""

    allowed_methods: List[str] = Field(description="Methods acceptable for the next step")
    completed_methods: List[str] = Field(default_factory=list, description="Methods already verified")
    pending_methods: List[str] = Field(default_factory=list, description="Methods still required")
    fp: str = Field(description="Device fingerprint the challenge was issued to")


class SetupClaims(TokenClaims):
    """MFA setup token claims (valid only for enrollment operations)."""


CLAIMS_BY_KIND: Dict[TokenKind, Type[TokenClaims]] = {
    TokenKind.ACCESS: AccessClaims,
    TokenKind.REFRESH: RefreshClaims,
    TokenKind.CHALLENGE: ChallengeClaims,
    TokenKind.MFA_SETUP: SetupClaims,
}


class MintedToken(BaseModel):
    """Encoded token plus the facts callers persist about it."""

    token: str
    jti: str
    expires_at: int
    expires_in: int


def key_id(key: str) -> str:
    """Public identifier for a signing key (never the key itself)."""
    return hashlib.sha256(key.encode()).hexdigest()[:12]


class TokenMinter:
    """Sign and verify tokens. The only holder of the signing keys."""

    def __init__(self, config: JWTConfig, clock: Optional[Clock] = None):
        """
        Initialize token minter.

        Args:
            config: JWT configuration
            clock: Time source for iat/exp and the rotation grace period
        """
        self.config = config
        self.clock = clock or Clock()
        self._started_at = self.clock.timestamp()
        self._current_kid = key_id(config.signing_key_current)
        self._previous_kid = key_id(config.signing_key_previous) if config.signing_key_previous else None

    def _ttl(self, kind: TokenKind) -> int:
        if kind == TokenKind.ACCESS:
            return self.config.access_ttl_seconds
        if kind == TokenKind.REFRESH:
            return self.config.refresh_ttl_seconds
        return self.config.challenge_ttl_seconds

    def _mint(self, kind: TokenKind, subject: str, extra_claims: Dict,
              ctx: Optional[RequestContext]) -> MintedToken:
        check_deadline(ctx)

        now = self.clock.timestamp()
        ttl = self._ttl(kind)
        jti = secrets.token_hex(16)

        claims = {
            "sub": subject,
            "kind": kind.value,
            "jti": jti,
            "exp": now + ttl,
            "iat": now,
            "iss": self.config.issuer,
            "aud": self.config.audience,
        }
        claims.update(extra_claims)

        token = jwt.encode(
            claims,
            self.config.signing_key_current,
            algorithm=self.config.algorithm,
            headers={"kid": self._current_kid},
        )

        logger.debug(f"Minted {kind.value} token for principal={subject}, expires_in={ttl}s")

        return MintedToken(token=token, jti=jti, expires_at=now + ttl, expires_in=ttl)

    def mint_access(self, principal_id: str, role: str, session_id: str, epoch: int,
                    ctx: Optional[RequestContext] = None) -> MintedToken:
        """
        Create an access token.

        Args:
            principal_id: Subject
            role: Role embedded for capability checks
            session_id: Session the credential belongs to
            epoch: Principal credential epoch at issue time
            ctx: Request context (deadline)

        Returns:
            Minted token
        """
        return self._mint(
            TokenKind.ACCESS,
            principal_id,
            {"role": role, "sid": session_id, "epoch": epoch},
            ctx,
        )

    def mint_refresh(self, principal_id: str, family: str, version: int, session_id: str,
                     ctx: Optional[RequestContext] = None) -> MintedToken:
        """
        Create a refresh token at a given family version.

        Args:
            principal_id: Subject
            family: Refresh family id
            version: Version within the family
            session_id: Session the family belongs to
            ctx: Request context (deadline)

        Returns:
            Minted token
        """
        return self._mint(
            TokenKind.REFRESH,
            principal_id,
            {"family": family, "version": version, "sid": session_id},
            ctx,
        )

    def mint_challenge(self, principal_id: str, methods: List[str], fingerprint: str,
                       completed: Optional[List[str]] = None, pending: Optional[List[str]] = None,
                       ctx: Optional[RequestContext] = None) -> MintedToken:
        """
        Create an MFA challenge token.

        Args:
            principal_id: Subject
            methods: Methods acceptable for the next verification
            fingerprint: Device fingerprint of the login request
            completed: Methods already verified on this login
            pending: Methods still required after the next one
            ctx: Request context (deadline)

        Returns:
            Minted token
        """
        return self._mint(
            TokenKind.CHALLENGE,
            principal_id,
            {
                "allowed_methods": list(methods),
                "completed_methods": list(completed or []),
                "pending_methods": list(pending or []),
                "fp": fingerprint,
            },
            ctx,
        )

    def mint_setup(self, principal_id: str, ctx: Optional[RequestContext] = None) -> MintedToken:
        """Create a token scoped to MFA setup operations."""
        return self._mint(TokenKind.MFA_SETUP, principal_id, {}, ctx)

    def _verification_keys(self, kid: Optional[str]) -> List[str]:
        keys = [self.config.signing_key_current]

        previous = self.config.signing_key_previous
        if previous:
            in_grace = self.clock.timestamp() < self._started_at + self.config.signing_key_grace_seconds
            if in_grace:
                if kid == self._previous_kid:
                    keys.insert(0, previous)
                else:
                    keys.append(previous)
            elif kid == self._previous_kid:
                logger.info("Rejected token signed with retired key")

        return keys

    def verify(self, token: str, expected_kind: TokenKind,
               ctx: Optional[RequestContext] = None) -> TokenClaims:
        """
        Verify and decode a token.

        Args:
            token: Encoded token
            expected_kind: Kind the caller accepts
            ctx: Request context (deadline)

        Returns:
            Typed claims for the expected kind

        Raises:
            TokenError: reason expired, bad_signature, wrong_kind or malformed
        """
        check_deadline(ctx)

        if not isinstance(token, str):
            raise TokenError(TokenError.MALFORMED)

        segments = token.split(".")
        if len(segments) != 3 or not all(segments):
            raise TokenError(TokenError.MALFORMED)

        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            raise TokenError(TokenError.BAD_SIGNATURE)

        payload = None
        for key in self._verification_keys(header.get("kid")):
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[self.config.algorithm],
                    audience=self.config.audience,
                    issuer=self.config.issuer,
                    options={
                        "verify_exp": False,
                        "verify_iat": False,
                        "verify_nbf": False,
                        "require": ["sub", "exp", "iat", "jti"],
                    },
                )
                break
            except jwt.InvalidSignatureError:
                continue
            except jwt.MissingRequiredClaimError:
                raise TokenError(TokenError.MALFORMED)
            except jwt.InvalidTokenError as e:
                logger.warning(f"Invalid token: {type(e).__name__}")
                raise TokenError(TokenError.BAD_SIGNATURE)

        if payload is None:
            logger.warning("Token signature did not verify with any active key")
            raise TokenError(TokenError.BAD_SIGNATURE)

        if payload.get("kind") != expected_kind.value:
            raise TokenError(TokenError.WRONG_KIND)

        try:
            claims = CLAIMS_BY_KIND[expected_kind](**payload)
        except ValidationError:
            raise TokenError(TokenError.MALFORMED)

        if claims.exp <= self.clock.timestamp():
            raise TokenError(TokenError.EXPIRED)

        return claims


# Token extraction utilities
def extract_token_from_header(authorization_header: Optional[str]) -> Optional[str]:
    """
    Extract bearer token from Authorization header.

    Expected format: "Bearer <token>"

    Args:
        authorization_header: Authorization header value

    Returns:
        Extracted token or None
    """
    if not authorization_header:
        return None

    parts = authorization_header.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        logger.warning("Invalid Authorization header format")
        return None

    return parts[1]
