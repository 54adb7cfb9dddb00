import json
from tt.common.logger import log
from tt.common.setup import PATHS

#region === Helpers and Paths ===

# Where settings.json lives. Read from PATHS on every call so a relocated data directory (--data-dir) is picked up.
def settings_path():
    return PATHS.settings

# Default values for every setting, and the values a setting is restricted to where it has a fixed set.
_SETTINGS_DEFAULTS = {
    "restore_policy": "resume",
    "store_backend": "file",
    "time_format": "long",
    "break_label": "Break",
    "console_log": False,
}
_SETTINGS_CHOICES = {
    "restore_policy": ("resume", "pause"),
    "store_backend": ("file", "memory"),
    "time_format": ("long", "short"),
}

# Helper to return a truly fresh, default settings dict.
def build_default_settings():
    return dict(_SETTINGS_DEFAULTS)

# Whether a loaded value can stand in for the given setting: right type, and one of the allowed choices if any.
def _is_valid(key, value):
    default = _SETTINGS_DEFAULTS[key]
    if type(value) is not type(default):
        return False
    if key in _SETTINGS_CHOICES and value not in _SETTINGS_CHOICES[key]:
        return False
    if key == "break_label" and not value.strip():
        return False
    return True

#endregion === Helpers and Paths ===

#region === Saving and Loading Settings ===

# Loads settings.json, filling in and logging any missing or invalid values with their defaults. Unknown keys are
# dropped. A missing file is normal on first run; an unreadable one falls back to defaults with a warning.
def load_settings():
    path = settings_path()
    try:
        if not path.exists():
            log.info(f"No existing settings.json found at '{path}', loading default settings.")
            return build_default_settings()

        with open(path, "r", encoding="utf-8") as f:
            loaded = json.load(f)
        if not isinstance(loaded, dict):
            raise TypeError(f"Expected a JSON object in settings.json, got {type(loaded).__name__}")

        settings = {}
        defaulted_values = set()
        for key, default in _SETTINGS_DEFAULTS.items():
            if key in loaded and _is_valid(key, loaded[key]):
                settings[key] = loaded[key]
            else:
                defaulted_values.add(key)
                settings[key] = default

        # Log results
        if defaulted_values:
            log.warning(f"Successfully loaded settings from '{path}', but with missing or invalid values that were defaulted: {', '.join(sorted(defaulted_values))}")
        else:
            log.info(f"Successfully loaded settings from '{path}'.")
        return settings
    # Fall back to fresh settings in case of error, but warn in log
    except (json.JSONDecodeError, OSError, TypeError):
        log.warning("Ran into an error while trying to load settings.json, falling back to default settings.",exc_info=True)
        return build_default_settings()
# Write the given settings to disk under PATHS.settings
def save_settings(settings):
    path = settings_path()
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings, f, indent=2)
    log.info(f"Successfully saved settings to '{path}'")

#endregion === Saving and Loading Settings ===
