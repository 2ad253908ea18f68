# dentalcrm/client/ui_config.py
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

TRUE_VALUES = {"true", "1", "yes", "on"}
FALSE_VALUES = {"false", "0", "no", "off"}


def env_flag(name: str, default: bool = True, environ: Optional[Mapping[str, str]] = None) -> bool:
    """Boolean toggle from the environment; unset or unrecognised values give the default."""
    raw = (environ if environ is not None else os.environ).get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return default


class UiConfig(BaseModel):
    show_gdc_public_footer: bool = True
    show_compact_internal_footer: bool = True
    public_footer_enabled: bool = True
    public_footer_variant: str = "compact"
    internal_footer_enabled: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "UiConfig":
        return cls(
            show_gdc_public_footer=env_flag("SHOW_GDC_PUBLIC_FOOTER", True, environ),
            show_compact_internal_footer=env_flag("SHOW_COMPACT_INTERNAL_FOOTER", True, environ),
        )

    def merge(self, server_settings: Optional[Dict[str, Any]]) -> "UiConfig":
        """Overlay tenant settings (camelCase keys from /ui/settings)."""
        if not server_settings:
            return self
        mapping = {
            "publicFooterEnabled": "public_footer_enabled",
            "publicFooterVariant": "public_footer_variant",
            "internalFooterEnabled": "internal_footer_enabled",
        }
        updates = {
            field: server_settings[key]
            for key, field in mapping.items()
            if server_settings.get(key) is not None
        }
        return self.model_copy(update=updates)

    @property
    def show_public_footer(self) -> bool:
        return self.show_gdc_public_footer and self.public_footer_enabled

    @property
    def show_internal_footer(self) -> bool:
        return self.show_compact_internal_footer and self.internal_footer_enabled
