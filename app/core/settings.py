from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_PARITY_DATASETS = "articles,feeds,tags,users,highlights"


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    base_data_dir: str
    data_dir: str
    parity_datasets: tuple[str, ...]
    seed_on_startup: bool
    verify_parity_before_seed: bool
    lock_timeout_seconds: float
    api_tokens: str

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _list(name: str, default: str) -> tuple[str, ...]:
            raw = os.getenv(name, default)
            return tuple(part.strip() for part in raw.split(",") if part.strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/app.db").strip(),
            base_data_dir=os.getenv("BASE_DATA_DIR", "seed/baseData").strip(),
            data_dir=os.getenv("DATA_DIR", "seed/data").strip(),
            parity_datasets=_list("PARITY_DATASETS", DEFAULT_PARITY_DATASETS),
            seed_on_startup=_b("SEED_ON_STARTUP", "0"),
            verify_parity_before_seed=_b("VERIFY_PARITY_BEFORE_SEED", "1"),
            lock_timeout_seconds=_f("LOCK_TIMEOUT_SECONDS", "10"),
            api_tokens=os.getenv("API_TOKENS", "").strip(),
        )

    def token_map(self) -> dict[str, str]:
        """Parse API_TOKENS ("token:user-id,token2:user-id2") into token -> user id."""
        tokens: dict[str, str] = {}
        for pair in self.api_tokens.split(","):
            token, sep, user_id = pair.strip().partition(":")
            if sep and token and user_id:
                tokens[token.strip()] = user_id.strip()
        return tokens
