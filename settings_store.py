"""Per-user explanation preferences and encrypted provider API keys."""

from __future__ import annotations

from datetime import datetime

from database import get_db
from key_vault import decrypt_api_key, encrypt_api_key, mask_api_key

BYOK_PROVIDERS = ("openai", "gemini", "mistral", "deepseek")
EXPLANATION_PROVIDERS = ("ollama", *BYOK_PROVIDERS, "ditectrev")
DEFAULT_PROVIDER = "ollama"


class UserSettingsStoreDB:
    """DB-backed user_settings row."""

    def __init__(self, user_id: int):
        self.user_id = user_id

    def _ensure(self) -> None:
        db = get_db()
        db.execute(
            "INSERT OR IGNORE INTO user_settings (user_id, updated_at) VALUES (?, ?)",
            (self.user_id, datetime.now().isoformat()),
        )
        db.commit()

    def _row(self):
        self._ensure()
        return get_db().execute(
            "SELECT * FROM user_settings WHERE user_id = ?", (self.user_id,)
        ).fetchone()

    def explanation_provider(self) -> str:
        row = self._row()
        return (row["explanation_provider"] if row else "") or DEFAULT_PROVIDER

    def set_explanation_provider(self, provider: str) -> None:
        if provider not in EXPLANATION_PROVIDERS:
            raise ValueError(f"Unknown explanation provider: {provider}")
        self._ensure()
        db = get_db()
        db.execute(
            "UPDATE user_settings SET explanation_provider = ?, updated_at = ? WHERE user_id = ?",
            (provider, datetime.now().isoformat(), self.user_id),
        )
        db.commit()

    def api_keys(self) -> dict[str, str]:
        """Decrypted keys for every provider that has one stored."""
        row = self._row()
        keys: dict[str, str] = {}
        for provider in BYOK_PROVIDERS:
            plain = decrypt_api_key(row[f"{provider}_api_key"] or "")
            if plain:
                keys[provider] = plain
        return keys

    def set_api_keys(self, api_keys: dict[str, str]) -> list[str]:
        """Encrypt and store keys. An empty string clears that provider.

        Returns the providers that were updated.
        """
        unknown = [p for p in api_keys if p not in BYOK_PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown API key provider(s): {', '.join(sorted(unknown))}")

        self._ensure()
        db = get_db()
        now = datetime.now().isoformat()
        for provider, key in api_keys.items():
            db.execute(
                f"UPDATE user_settings SET {provider}_api_key = ?, updated_at = ? WHERE user_id = ?",
                (encrypt_api_key((key or "").strip()), now, self.user_id),
            )
        db.commit()
        return sorted(api_keys)

    def masked_api_keys(self) -> dict[str, str]:
        keys = self.api_keys()
        return {p: mask_api_key(keys.get(p, "")) for p in BYOK_PROVIDERS}
