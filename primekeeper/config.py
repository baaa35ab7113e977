"""Runtime configuration, read once from the environment (.env aware).

Every job receives a ``KeeperConfig`` explicitly; nothing below the CLI reads
``os.environ`` after startup.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from .errors import ConfigError

ARBITRUM_RPC = "https://arb1.arbitrum.io/rpc"
AVALANCHE_RPC = "https://api.avax.network/ext/bc/C/rpc"

ARBITRUM_FACTORY = "0xFf5e3dDaefF411a1dC6CcE00014e4Bca39265c20"
AVALANCHE_FACTORY = "0x3Ea9D480295A73fd2aF95b4D96c2afF88b21B03D"

PROD_TOKEN_MANAGER = "0x0a0D954d4b0F0b47a5990C0abd179A90fF74E255"
QA_TOKEN_MANAGER = "0x4f032CC36B72D934551bc0395Df17162eF92D8D9"
BENCHMARK_ACCOUNT = "0xDee388A00bacC746197F6ac64Dc99D4017522349"

REDSTONE_GATEWAYS = (
    "https://oracle-gateway-1.a.redstone.vip",
    "https://oracle-gateway-1.a.redstone.finance",
)
UNIQUE_SIGNERS = 3

ARBITRUM_GM_TOKENS = (
    ("GM_ETH_WETH_USDC", "0x70d95587d40A2caf56bd97485aB3Eec10Bee6336"),
    ("GM_ARB_ARB_USDC", "0xC25cEf6061Cf5dE5eb761b50E4743c1F5D7E5407"),
    ("GM_LINK_LINK_USDC", "0x7f1fa204bb700853D36994DA19F830b6Ad18455C"),
    ("GM_UNI_UNI_USDC", "0xc7Abb2C5f3BF3CEB389dF0Eecd6120D451170B50"),
    ("GM_BTC_WBTC_USDC", "0x47c031236e19d024b42f8AE6780E44A573170703"),
    ("GM_SOL_SOL_USDC", "0x09400D9DB990D5ed3f35D7be61DfAEB900Af03C9"),
    ("GM_NEAR_WETH_USDC", "0x63Dc80EE90F26363B3FCD609007CC9e14c8991BE"),
    ("GM_ATOM_WETH_USDC", "0x248C35760068cE009a13076D573ed3497A47bCD4"),
    ("GM_GMX_GMX_USDC", "0x55391D178Ce46e7AC8eaAEa50A72D1A5a8A622Da"),
    ("GM_SUI_WETH_USDC", "0x6Ecf2133E2C9751cAAdCb6958b9654baE198a797"),
    ("GM_SEI_WETH_USDC", "0xB489711B1cB86afDA48924730084e23310EB4883"),
    ("GM_ETH_WETH", "0x450bb6774Dd8a756274E0ab4107953259d2ac541"),
    ("GM_BTC_WBTC", "0x7C11F78Ce78768518D743E81Fdfa2F860C6b9A77"),
    ("GM_GMX_GMX", "0xbD48149673724f9cAeE647bb4e9D9dDaF896Efeb"),
)

AVALANCHE_GM_TOKENS = (
    ("GM_BTC_BTCb_USDC", "0xFb02132333A79C8B5Bd0b64E3AbccA5f7fAf2937"),
    ("GM_ETH_WETHe_USDC", "0xB7e69749E3d2EDd90ea59A4932EFEa2D41E245d7"),
    ("GM_AVAX_WAVAX_USDC", "0x913C1F46b48b3eD35E7dc3Cf754d4ae8499F31CF"),
    ("GM_BTC_BTCb", "0x3ce7BCDB37Bf587d1C17B930Fa0A7000A0648D12"),
    ("GM_ETH_WETHe", "0x2A3Cf4ad7db715DF994393e4482D6f1e58a1b533"),
    ("GM_AVAX_WAVAX", "0x08b25A2a89036d298D6dB8A74ace9d1ce6Db15E5"),
)

DEFAULT_REJECTIONS = (
    ("insolvent", "The action may cause an account to become insolvent"),
)


@dataclass(frozen=True)
class Resource:
    name: str
    address: str


@dataclass(frozen=True)
class ChainConfig:
    name: str
    chain_id: int
    rpc_urls: Tuple[str, ...]
    factory: str
    resources: Tuple[Resource, ...]
    token_manager: Optional[str] = None
    data_service_id: Optional[str] = None


@dataclass(frozen=True)
class KeeperConfig:
    chains: Tuple[ChainConfig, ...]
    private_key: Optional[str] = None
    progress_file: str = "sweep-progress.json"
    batch_size: int = 100
    read_concurrency: int = 8
    max_read_attempts: int = 4
    backoff_seconds: float = 0.5
    call_timeout: float = 20.0
    confirmation_timeout: float = 180.0
    min_confirmations: int = 1
    tx_delay: float = 2.0
    rejections: Tuple[Tuple[str, str], ...] = DEFAULT_REJECTIONS
    output_dir: str = "."
    deployer_key: Optional[str] = None
    qa_token_manager: str = QA_TOKEN_MANAGER
    benchmark_account: str = BENCHMARK_ACCOUNT
    known_identifiers: Tuple[str, ...] = ("AVAX", "sAVAX", "ggAVAX")
    oracle_urls: Tuple[str, ...] = REDSTONE_GATEWAYS
    unique_signers: int = UNIQUE_SIGNERS

    def chain(self, name: str) -> ChainConfig:
        for c in self.chains:
            if c.name.lower() == name.lower():
                return c
        raise ConfigError(f"unknown chain {name!r} (configured: {', '.join(c.name for c in self.chains)})")

    def only(self, names) -> "KeeperConfig":
        if not names:
            return self
        return replace(self, chains=tuple(self.chain(n) for n in names))

    def validate(self, require_signer: bool = False) -> "KeeperConfig":
        """Fail fast on anything a multi-hour run would only trip over later."""
        if not self.chains:
            raise ConfigError("no chains configured")
        for c in self.chains:
            if not c.rpc_urls:
                raise ConfigError(f"{c.name}: no RPC URL configured")
            _check_address(f"{c.name} factory", c.factory)
            if c.token_manager:
                _check_address(f"{c.name} token manager", c.token_manager)
            if not c.resources:
                raise ConfigError(f"{c.name}: no resources configured")
            seen = set()
            for r in c.resources:
                _check_address(f"{c.name} resource {r.name}", r.address)
                if r.address.lower() in seen:
                    raise ConfigError(f"{c.name}: resource {r.name} listed twice")
                seen.add(r.address.lower())
        if self.batch_size < 1:
            raise ConfigError("KEEPER_BATCH_SIZE must be >= 1")
        if self.read_concurrency < 1:
            raise ConfigError("KEEPER_READ_CONCURRENCY must be >= 1")
        if self.max_read_attempts < 1:
            raise ConfigError("KEEPER_MAX_READ_ATTEMPTS must be >= 1")
        if self.min_confirmations < 1:
            raise ConfigError("KEEPER_MIN_CONFIRMATIONS must be >= 1")
        if self.unique_signers < 1:
            raise ConfigError("KEEPER_UNIQUE_SIGNERS must be >= 1")
        if self.call_timeout <= 0 or self.confirmation_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        if not self.progress_file:
            raise ConfigError("KEEPER_PROGRESS_FILE is empty")
        if require_signer:
            if not self.private_key:
                raise ConfigError("LIQUIDATOR_PRIVATE_KEY environment variable is required")
            signer_address(self.private_key)
        return self


def signer_address(private_key: str) -> str:
    try:
        return Account.from_key(private_key).address
    except Exception as e:
        raise ConfigError(f"invalid private key: {e}") from e


def _check_address(label: str, value: str):
    if not Web3.is_address(value):
        raise ConfigError(f"{label}: {value!r} is not an address")


def _urls(raw: Optional[str], *defaults: str) -> Tuple[str, ...]:
    if not raw:
        return defaults
    return tuple(u.strip() for u in raw.split(",") if u.strip())


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def parse_rejections(raw: Optional[str]) -> Tuple[Tuple[str, str], ...]:
    """``name=pattern;name=pattern`` -> ((name, pattern), ...)."""
    if not raw:
        return DEFAULT_REJECTIONS
    rules = []
    for part in raw.split(";"):
        part = part.strip()
        if not part:
            continue
        name, sep, pattern = part.partition("=")
        if not sep or not name.strip() or not pattern.strip():
            raise ConfigError(f"KEEPER_REJECTIONS entry {part!r} is not name=pattern")
        rules.append((name.strip(), pattern.strip()))
    return tuple(rules)


def default_chains(env: Mapping[str, str]) -> Dict[str, ChainConfig]:
    return {
        "arbitrum": ChainConfig(
            name="Arbitrum",
            chain_id=42161,
            rpc_urls=_urls(env.get("RPC_ARBITRUM_URL"), ARBITRUM_RPC),
            factory=ARBITRUM_FACTORY,
            resources=tuple(Resource(n, a) for n, a in ARBITRUM_GM_TOKENS),
            token_manager=env.get("TOKEN_MANAGER_ADDRESS") or PROD_TOKEN_MANAGER,
            data_service_id="redstone-arbitrum-prod",
        ),
        "avalanche": ChainConfig(
            name="Avalanche",
            chain_id=43114,
            rpc_urls=_urls(env.get("RPC_AVALANCHE_URL"), AVALANCHE_RPC),
            factory=AVALANCHE_FACTORY,
            resources=tuple(Resource(n, a) for n, a in AVALANCHE_GM_TOKENS),
            data_service_id="redstone-avalanche-prod",
        ),
    }


def load_config(env_file: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> KeeperConfig:
    if env is None:
        load_dotenv(env_file) if env_file else load_dotenv()
        env = os.environ

    chains = default_chains(env)
    wanted = [c.strip().lower() for c in (env.get("KEEPER_CHAINS") or "arbitrum,avalanche").split(",") if c.strip()]
    for w in wanted:
        if w not in chains:
            raise ConfigError(f"KEEPER_CHAINS: unknown chain {w!r}")

    return KeeperConfig(
        chains=tuple(chains[w] for w in wanted),
        private_key=env.get("LIQUIDATOR_PRIVATE_KEY") or None,
        progress_file=env.get("KEEPER_PROGRESS_FILE") or "sweep-progress.json",
        batch_size=_int(env, "KEEPER_BATCH_SIZE", 100),
        read_concurrency=_int(env, "KEEPER_READ_CONCURRENCY", 8),
        max_read_attempts=_int(env, "KEEPER_MAX_READ_ATTEMPTS", 4),
        backoff_seconds=_float(env, "KEEPER_BACKOFF_SECONDS", 0.5),
        call_timeout=_float(env, "KEEPER_CALL_TIMEOUT", 20.0),
        confirmation_timeout=_float(env, "KEEPER_CONFIRMATION_TIMEOUT", 180.0),
        min_confirmations=_int(env, "KEEPER_MIN_CONFIRMATIONS", 1),
        tx_delay=_float(env, "KEEPER_TX_DELAY", 2.0),
        rejections=parse_rejections(env.get("KEEPER_REJECTIONS")),
        output_dir=env.get("KEEPER_OUTPUT_DIR") or ".",
        deployer_key=env.get("DP_DEPLOYER_KEY") or None,
        qa_token_manager=env.get("QA_TOKEN_MANAGER_ADDRESS") or QA_TOKEN_MANAGER,
        benchmark_account=env.get("BENCHMARK_ACCOUNT") or BENCHMARK_ACCOUNT,
        oracle_urls=_urls(env.get("REDSTONE_CACHE_URLS"), *REDSTONE_GATEWAYS),
        unique_signers=_int(env, "KEEPER_UNIQUE_SIGNERS", UNIQUE_SIGNERS),
    )
