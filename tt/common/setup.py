import os
from pathlib import Path
from dataclasses import dataclass

# Lil helper function to create missing directories if missing, and optionally error out when a path
# doesn't exist.
def ensure_directory(path: Path,must_exist=False):
    if must_exist:
        if not path.exists():
            raise FileNotFoundError(f"Required directory is missing: {path}")
        if not path.is_dir():
            raise NotADirectoryError(f"Expected a directory, got a file: {path}")
    else:
        path.mkdir(parents=True,exist_ok=True)
    return path

# Dataclass for accessing paths across program.
@dataclass(frozen=False)
class ProjectPaths:

    data: Path
    logs: Path
    store: Path
    settings: Path

    # Everything lives under $TT_DATA_DIR when set (tests and the --data-dir flag use this), otherwise under
    # ~/.treetimer.
    @staticmethod
    def build(data_dir: str | os.PathLike | None = None):
        if data_dir is None:
            data_dir = os.getenv("TT_DATA_DIR")
        if data_dir:
            data = ensure_directory(Path(data_dir).expanduser())
        else:
            data = ensure_directory(Path.home() / ".treetimer")

        # Folders within the data folder
        logs = ensure_directory(data / "logs")
        store = ensure_directory(data / "store")

        return ProjectPaths(
            data = data,
            logs = logs,
            store = store,
            settings = data / "settings.json",
        )

    # Repoints every path at a new data directory, in place, so modules holding a reference to PATHS see the move.
    def relocate(self, data_dir: str | os.PathLike):
        fresh = ProjectPaths.build(data_dir)
        self.data = fresh.data
        self.logs = fresh.logs
        self.store = fresh.store
        self.settings = fresh.settings
        return self

PATHS = ProjectPaths.build()
