import os
import yaml
import keyring

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """RepTrack settings file, environment overrides and keyring secrets.

    With ``ENCRYPT_SETTINGS=1`` the file keeps only a ``true`` marker for
    each sensitive key and the value itself lives in the system keyring
    under the ``reptrack`` service.
    """

    SERVICE = "reptrack"
    SENSITIVE_KEYS = frozenset({"jwt_secret", "google_client_secret"})
    ENV_OVERRIDES = {
        "REPTRACK_ENV": "environment",
        "REPTRACK_DB": "db_path",
        "REPTRACK_TIMEZONE": "timezone",
        "JWT_SECRET": "jwt_secret",
        "APP_URL": "app_url",
        "GOOGLE_CLIENT_ID": "google_client_id",
        "GOOGLE_CLIENT_SECRET": "google_client_secret",
    }

    def __init__(self, path: str = "settings.yaml", encrypt: bool | None = None) -> None:
        self.path = path
        if encrypt is None:
            encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"
        self.encrypt = encrypt

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping of settings")
        return data

    def load(self) -> dict:
        """Return the file's settings with keyring secrets filled in."""
        data = self._read()
        if self.encrypt:
            for key in self.SENSITIVE_KEYS & data.keys():
                secret = keyring.get_password(self.SERVICE, key)
                if secret is None:
                    del data[key]
                else:
                    data[key] = secret
        return data

    def save(self, data: dict) -> None:
        out = dict(data)
        if self.encrypt:
            for key in self.SENSITIVE_KEYS & out.keys():
                keyring.set_password(self.SERVICE, key, str(out[key]))
                out[key] = True
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)

    @classmethod
    def environment(cls) -> dict:
        """Settings taken from non-empty ``ENV_OVERRIDES`` variables."""
        return {
            setting: os.environ[var]
            for var, setting in cls.ENV_OVERRIDES.items()
            if os.environ.get(var)
        }

    def settings(self, overrides: dict | None = None) -> SettingsSchema:
        """Merge file, environment and ``overrides`` (later wins) and validate."""
        data = {**self.load(), **self.environment(), **(overrides or {})}
        return validate_settings(data)


def load_settings(
    yaml_path: str = "settings.yaml", overrides: dict | None = None
) -> SettingsSchema:
    """Validated settings for ``yaml_path``; invalid values raise ``ValueError``."""
    return YamlConfig(yaml_path).settings(overrides)
