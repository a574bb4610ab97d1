"""
Feishu account configuration

``channels.feishu`` holds the default account's settings at the top level
and optional named accounts under ``accounts``. An account's effective
config is the top level merged with its own block (account keys win).
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from core.gateway.types import GatewayConfig

DEFAULT_ACCOUNT_ID = "default"

GroupPolicy = Literal["allowlist", "open", "disabled"]
DmPolicy = Literal["pairing", "allowlist", "open", "disabled"]
AllowEntry = Union[str, int]


class FeishuDmConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    policy: Optional[DmPolicy] = None
    allow_from: List[AllowEntry] = Field(default_factory=list)


class FeishuGroupEntry(BaseModel):
    """Per-group overrides, keyed by chat id, group name or ``"*"``."""
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    allow: Optional[bool] = None
    require_mention: Optional[bool] = None
    users: List[AllowEntry] = Field(default_factory=list)
    system_prompt: Optional[str] = None
    mention_fail_open: Optional[bool] = None


class FeishuAccountConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    enabled: Optional[bool] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    verification_token: Optional[str] = None
    encrypt_key: Optional[str] = None
    bot_user_id: Optional[str] = None
    bot_open_id: Optional[str] = None
    bot_name: Optional[str] = None
    allow_bots: Optional[bool] = None
    require_mention: Optional[bool] = None
    group_policy: Optional[GroupPolicy] = None
    groups: Optional[Dict[str, FeishuGroupEntry]] = None
    dm: Optional[FeishuDmConfig] = None
    domain: Optional[str] = Field(None, description="Open platform base URL, e.g. https://open.larksuite.com")
    app_type: Optional[Literal["self_build", "isv"]] = None
    tenant_key: Optional[str] = None
    mention_fail_open: Optional[bool] = Field(
        None,
        description="Let unmentioned group messages through when mentions cannot be detected",
    )


class FeishuChannelConfig(FeishuAccountConfig):
    default_account: Optional[str] = None
    accounts: Optional[Dict[str, FeishuAccountConfig]] = None


@dataclass(frozen=True)
class ResolvedFeishuAccount:
    """An account's merged config plus derived policy values."""

    account_id: str
    config: FeishuAccountConfig
    enabled: bool
    configured: bool
    name: Optional[str] = None
    default_group_policy: Optional[GroupPolicy] = None

    @property
    def group_policy(self) -> GroupPolicy:
        return self.config.group_policy or self.default_group_policy or "allowlist"

    @property
    def dm_policy(self) -> DmPolicy:
        if self.config.dm and self.config.dm.policy:
            return self.config.dm.policy
        return "pairing"

    @property
    def dm_enabled(self) -> bool:
        return not (self.config.dm and self.config.dm.enabled is False)

    @property
    def dm_allow_from(self) -> List[str]:
        if not self.config.dm:
            return []
        return [str(v) for v in self.config.dm.allow_from]

    @property
    def groups(self) -> Dict[str, FeishuGroupEntry]:
        return self.config.groups or {}

    @property
    def require_mention(self) -> bool:
        return self.config.require_mention if self.config.require_mention is not None else True

    @property
    def allow_bots(self) -> bool:
        return bool(self.config.allow_bots)

    @property
    def mention_fail_open(self) -> bool:
        return self.config.mention_fail_open is not False


@dataclass(frozen=True)
class GroupConfigResolution:
    allowlist_configured: bool
    entry: Optional[FeishuGroupEntry] = None
    matched_key: Optional[str] = None


def normalize_account_id(account_id: Optional[str]) -> str:
    normalized = (account_id or "").strip().lower()
    return normalized or DEFAULT_ACCOUNT_ID


def _channel_config(cfg: "GatewayConfig") -> FeishuChannelConfig:
    return cfg.channels.feishu or FeishuChannelConfig()


def list_feishu_account_ids(cfg: "GatewayConfig") -> List[str]:
    """Named accounts sorted, or ``["default"]`` when none are configured."""
    accounts = _channel_config(cfg).accounts or {}
    ids = sorted({normalize_account_id(k) for k in accounts.keys() if k and k.strip()})
    if not ids:
        return [DEFAULT_ACCOUNT_ID]
    return ids


def resolve_default_feishu_account_id(cfg: "GatewayConfig") -> str:
    channel = _channel_config(cfg)
    if channel.default_account and channel.default_account.strip():
        return normalize_account_id(channel.default_account)
    ids = list_feishu_account_ids(cfg)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def merge_feishu_account_config(cfg: "GatewayConfig", account_id: str) -> FeishuAccountConfig:
    """Top-level channel fields overlaid with the account's own fields."""
    channel = _channel_config(cfg)
    base = channel.model_dump(exclude={"accounts", "default_account"}, exclude_unset=True)
    account_id = normalize_account_id(account_id)
    # Keys are matched the way ids are normalized, so "Work" and "work" are one account
    account = next(
        (v for k, v in (channel.accounts or {}).items() if normalize_account_id(k) == account_id),
        None,
    )
    overrides = account.model_dump(exclude_unset=True) if account else {}
    return FeishuAccountConfig.model_validate({**base, **overrides})


def resolve_feishu_account(
    cfg: "GatewayConfig",
    account_id: Optional[str] = None,
) -> ResolvedFeishuAccount:
    """
    Resolve one account. Side-effect free; safe to call per event.

    ``enabled`` requires both the channel and the account not to be disabled;
    ``configured`` requires non-blank app_id and app_secret.
    """
    resolved_id = normalize_account_id(account_id)
    base_enabled = _channel_config(cfg).enabled is not False
    merged = merge_feishu_account_config(cfg, resolved_id)
    configured = bool((merged.app_id or "").strip() and (merged.app_secret or "").strip())

    return ResolvedFeishuAccount(
        account_id=resolved_id,
        config=merged,
        enabled=base_enabled and merged.enabled is not False,
        configured=configured,
        name=(merged.name or "").strip() or None,
        default_group_policy=cfg.channels.defaults.group_policy,
    )


def list_enabled_feishu_accounts(cfg: "GatewayConfig") -> List[ResolvedFeishuAccount]:
    accounts = [resolve_feishu_account(cfg, aid) for aid in list_feishu_account_ids(cfg)]
    return [a for a in accounts if a.enabled]


def resolve_group_config(
    account: ResolvedFeishuAccount,
    group_id: str,
    group_name: Optional[str] = None,
) -> GroupConfigResolution:
    """
    Find the group entry for a conversation.

    Lookup order: exact chat id, exact name, lower-cased name, wildcard.
    An empty ``groups`` map means no allow-list is configured at all.
    """
    groups = account.groups
    if not groups:
        return GroupConfigResolution(allowlist_configured=False)

    candidates: List[str] = [group_id]
    if group_name:
        candidates.append(group_name)
        candidates.append(group_name.lower())

    for key in candidates:
        if key and key in groups:
            return GroupConfigResolution(True, groups[key], key)

    if "*" in groups:
        return GroupConfigResolution(True, groups["*"], "*")

    return GroupConfigResolution(allowlist_configured=True)
