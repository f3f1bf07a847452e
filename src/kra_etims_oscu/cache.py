import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CACHE_FILE = os.path.join(tempfile.gettempdir(), "kra_etims_token.json")


class CachedToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    expires_at: int  # Unix timestamp, already reduced by the refresh buffer


class TokenCache:
    """
    File-backed store for a single bearer token.
    Holds no freshness policy: callers decide whether `expires_at` is still good.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path or DEFAULT_CACHE_FILE)

    def read(self) -> Optional[CachedToken]:
        """Returns None when the file is missing, unreadable or corrupt."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Token cache miss: %s does not exist", self.path)
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Token cache unreadable at %s: %s", self.path, e)
            return None
        try:
            return CachedToken.model_validate_json(raw)
        except ValueError:
            logger.warning("Token cache at %s is corrupt, ignoring it", self.path)
            return None

    def write(self, token: CachedToken) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a concurrent reader never sees a half-written file
        fd, tmp_name = tempfile.mkstemp(prefix=".kra_token-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(token.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
