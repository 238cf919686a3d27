"""
File storage for the OAuth client registration and the user's token grant.

Reads search an explicit ordered list of candidate paths, so the server works
whether it is launched from the project directory or by an MCP host with a
different working directory. Writes go to the single configured token path.
"""

import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from .errors import GrantMalformed, PersistenceError, RegistrationMalformed, RegistrationNotFound
from .models import ClientRegistration, TokenGrant

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

REGISTRATION_FALLBACKS = ('google-oauth-key.json', 'credentials.json')
GRANT_FALLBACKS = ('token.json',)


def candidate_paths(configured: Optional[PathLike], fallbacks: Iterable[str] = ()) -> List[Path]:
    """
    Ordered, de-duplicated list of places to look for a file.

    The configured path as given, its absolute resolution, the path joined to the
    current working directory, then the conventional fallback names.
    """
    candidates: List[Path] = []
    if configured:
        configured = Path(configured)
        candidates += [configured, configured.resolve(), Path.cwd() / configured]
    candidates += [Path('.') / name for name in fallbacks]

    seen = set()
    ordered = []
    for path in candidates:
        key = os.path.abspath(path)
        if key not in seen:
            seen.add(key)
            ordered.append(path)
    return ordered


def first_readable(paths: Iterable[Path],
                   parse: Optional[Callable[[bytes], Any]] = None) -> Optional[Tuple[Path, Any]]:
    """
    Return ``(path, value)`` for the first candidate that can be read.

    When ``parse`` is given a candidate only counts if ``parse`` accepts its bytes,
    and ``value`` is the parsed result. Returns None when no candidate qualifies.
    """
    for path in paths:
        try:
            raw = Path(path).read_bytes()
        except OSError as e:
            logger.debug("Could not read %s: %s", path, e)
            continue
        if parse is None:
            return Path(path), raw
        try:
            return Path(path), parse(raw)
        except ValueError as e:
            logger.debug("Could not parse %s: %s", path, e)
    return None


class CredentialStore:
    """Loads the client registration and loads/saves the token grant."""

    def __init__(self, credentials_path: Optional[PathLike], token_path: Optional[PathLike]):
        self.credentials_path = Path(credentials_path) if credentials_path else None
        self.token_path = Path(token_path) if token_path else None

    def registration_candidates(self) -> List[Path]:
        return candidate_paths(self.credentials_path, REGISTRATION_FALLBACKS)

    def grant_candidates(self) -> List[Path]:
        return candidate_paths(self.token_path, GRANT_FALLBACKS)

    def load_registration(self) -> ClientRegistration:
        """
        Load the OAuth client registration.

        Raises:
            RegistrationNotFound: No candidate path holds parseable JSON.
            RegistrationMalformed: The JSON lacks the client id, secret or redirect URIs.
        """
        candidates = self.registration_candidates()
        found = first_readable(candidates, parse=json.loads)
        if found is None:
            raise RegistrationNotFound(candidates)
        path, data = found
        logger.info("Found OAuth client credentials at %s", path)
        try:
            return ClientRegistration.from_client_secrets(data)
        except RegistrationMalformed as e:
            raise RegistrationMalformed(f"{path}: {e}") from e

    def load_grant(self) -> Optional[TokenGrant]:
        """
        Load the stored token grant, or None if no token file exists yet.

        Raises:
            GrantMalformed: A token file was found but could not be parsed.
        """
        found = first_readable(self.grant_candidates())
        if found is None:
            logger.info("No stored OAuth token found")
            return None
        path, raw = found
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise GrantMalformed(f"Token file {path} is not valid JSON: {e}") from e
        try:
            grant = TokenGrant.from_dict(data)
        except GrantMalformed as e:
            raise GrantMalformed(f"{path}: {e}") from e
        logger.info("Loaded OAuth token from %s", path)
        return grant

    def save_grant(self, grant: TokenGrant) -> None:
        """
        Atomically replace the token file with ``grant``.

        The grant is written to a temporary file in the same directory and renamed
        over the target, so a crash leaves either the old file or the new one.

        Raises:
            PersistenceError: The file could not be written.
        """
        if self.token_path is None:
            raise PersistenceError("TOKEN_PATH is not configured; cannot save the OAuth token")

        target = self.token_path
        tmp_path = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix='.tmp')
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(grant.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
            except NotImplementedError:
                pass
            os.replace(tmp_path, target)
            tmp_path = None
        except OSError as e:
            raise PersistenceError(f"Could not save OAuth token to {target}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
        logger.info("Saved OAuth token to %s", target)
