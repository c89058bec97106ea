import os
import sys

import pytest

from credentials import CredentialStore, validate_bot_token
from panel_errors import ValidationError
from tests.helpers import VALID_TOKEN, messages


class TestValidateBotToken:
    def test_accepts_well_formed_token(self) -> None:
        assert validate_bot_token(VALID_TOKEN)

    @pytest.mark.parametrize(
        "token",
        [
            None,
            "",
            12345,
            "short",
            "A" * 58,          # under the pattern minimum
            "A" * 73,          # over the pattern maximum
            "A" * 30 + " " + "B" * 38,
            "A" * 30 + "/" + "B" * 38,
        ],
    )
    def test_rejects_malformed_tokens(self, token) -> None:
        assert not validate_bot_token(token)


class TestCredentialStore:
    def test_empty_store_has_no_token(self, credentials) -> None:
        assert credentials.get_token() == ""
        assert not credentials.has_token

    def test_save_then_load_from_a_fresh_store(self, credentials, bot_root, sink) -> None:
        """The file written by save() is what a restarted panel reads back."""
        credentials.save(VALID_TOKEN, "20")

        text = (bot_root / ".env").read_text(encoding="utf-8")
        assert text == f"DISCORD_TOKEN={VALID_TOKEN}\nNODE_ENV=production\nNODE_VERSION=20\n"

        fresh = CredentialStore(bot_root / ".env", sink)
        assert fresh.load() == VALID_TOKEN
        assert fresh.has_token
        assert "Bot token loaded from .env file" in messages(sink)

    def test_save_caches_token(self, credentials) -> None:
        credentials.save(VALID_TOKEN, "18")
        assert credentials.get_token() == VALID_TOKEN

    def test_invalid_token_is_not_written(self, credentials, bot_root) -> None:
        with pytest.raises(ValidationError) as exc:
            credentials.save("not-a-token", "18")
        assert exc.value.message == "Invalid Discord bot token format"
        assert not (bot_root / ".env").exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_is_owner_only(self, credentials, bot_root) -> None:
        (bot_root / ".env").write_text("OLD=1\n")
        os.chmod(bot_root / ".env", 0o644)
        credentials.save(VALID_TOKEN, "18")
        assert (os.stat(bot_root / ".env").st_mode & 0o777) == 0o600

    def test_token_never_reaches_the_log(self, credentials, sink) -> None:
        credentials.save(VALID_TOKEN, "18")
        credentials.load()
        assert not any(VALID_TOKEN in m for m in messages(sink))

    def test_reload_follows_the_file(self, credentials, bot_root) -> None:
        credentials.save(VALID_TOKEN, "18")
        other = "D" * 24 + "." + "E" * 6 + "." + "F" * 27
        (bot_root / ".env").write_text(f"DISCORD_TOKEN={other}\n")
        assert credentials.get_token() == VALID_TOKEN  # cached
        assert credentials.reload() == other
        (bot_root / ".env").unlink()
        assert credentials.reload() == ""
        assert not credentials.has_token
