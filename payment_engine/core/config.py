import logging

from pydantic_settings import BaseSettings
from pydantic import BaseModel, ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Ledger (cluster defaults apply when the overrides are unset)
    LEDGER_CLUSTER: str = "devnet"  # localnet | devnet | mainnet-beta
    LEDGER_RPC_URL: Optional[str] = None
    LEDGER_PROGRAM_ID: Optional[str] = None
    LEDGER_FUNDING_MINT: Optional[str] = None
    LEDGER_COMMITMENT: str = "processed"
    LEDGER_TIMEOUT_SECONDS: float = 10.0
    LEDGER_SKIP_PREFLIGHT: bool = True
    LEDGER_CONFIRM_ATTEMPTS: int = 20
    LEDGER_CONFIRM_INTERVAL_SECONDS: float = 0.5

    # Plan catalog
    PLAN_CACHE_TTL_SECONDS: int = 3600

    # Service-side accounts credited on purchase
    SERVICE_ACCOUNT: Optional[str] = None
    SERVICE_TOKEN_ACCOUNT: Optional[str] = None

    # Server-side signing (HTTP API purchases)
    WALLET_KEYPAIR_PATH: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


# Known cluster endpoints; the escrow program is deployed at the same id everywhere.
_CLUSTERS = {
    "localnet": {
        "http_url": "http://127.0.0.1:8899",
        "ws_url": "ws://127.0.0.1:8900",
        "program_id": "AeaX15Xn4YCSLGBvf1EMdjHViewi28odizgfyQ3RLD9e",
    },
    "devnet": {
        "http_url": "https://api.devnet.solana.com",
        "ws_url": "wss://api.devnet.solana.com",
        "program_id": "AeaX15Xn4YCSLGBvf1EMdjHViewi28odizgfyQ3RLD9e",
    },
    "mainnet-beta": {
        "http_url": "https://api.mainnet-beta.solana.com",
        "ws_url": "wss://api.mainnet-beta.solana.com",
        "program_id": "AeaX15Xn4YCSLGBvf1EMdjHViewi28odizgfyQ3RLD9e",
    },
}


class LedgerConfig(BaseModel):
    """
    Immutable ledger environment handed to every client component.

    Holds the endpoints, the escrow program id, the funding mint and the fixed
    program ids the escrow instruction needs. Instances for different clusters
    can live side by side in one process.
    """
    model_config = ConfigDict(frozen=True)

    cluster: str
    http_url: str
    ws_url: str
    program_id: str
    funding_mint: str = "9ThGirbgEtRrjwtg1DVZ4fD5BkPAWtseYpgrsLH3NFu8"
    token_decimals: int = 9
    commitment: str = "processed"
    system_program: str = "11111111111111111111111111111111"
    token_program: str = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
    associated_token_program: str = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
    timeout_seconds: float = 10.0
    skip_preflight: bool = True
    confirm_attempts: int = 20
    confirm_interval_seconds: float = 0.5

    @classmethod
    def for_cluster(cls, cluster: str = "devnet", **overrides) -> "LedgerConfig":
        """Build the config for a named cluster, applying keyword overrides."""
        if cluster not in _CLUSTERS:
            raise ValueError(f"Unknown ledger cluster: {cluster}")
        values = {"cluster": cluster, **_CLUSTERS[cluster]}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @classmethod
    def from_settings(cls, settings_obj: Optional[Settings] = None) -> "LedgerConfig":
        cfg = settings_obj or settings
        return cls.for_cluster(
            cfg.LEDGER_CLUSTER,
            http_url=cfg.LEDGER_RPC_URL,
            program_id=cfg.LEDGER_PROGRAM_ID,
            funding_mint=cfg.LEDGER_FUNDING_MINT,
            commitment=cfg.LEDGER_COMMITMENT,
            timeout_seconds=cfg.LEDGER_TIMEOUT_SECONDS,
            skip_preflight=cfg.LEDGER_SKIP_PREFLIGHT,
            confirm_attempts=cfg.LEDGER_CONFIRM_ATTEMPTS,
            confirm_interval_seconds=cfg.LEDGER_CONFIRM_INTERVAL_SECONDS,
        )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("payment_engine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    if cfg.LEDGER_CLUSTER not in _CLUSTERS:
        message = f"Unknown LEDGER_CLUSTER: {cfg.LEDGER_CLUSTER}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    required_keys = [
        "SERVICE_ACCOUNT",
        "SERVICE_TOKEN_ACCOUNT",
        "WALLET_KEYPAIR_PATH",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
