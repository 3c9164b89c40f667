"""Constants for the scaffold apply engine."""

import os

# Evidence file naming
MANIFEST_PREFIX = "scaffold_apply_"
MANIFEST_REF_PREFIX = "evidence:scaffold_apply:"

# Checkpoint ids are cp_<scaffold_id>_<epoch_ms>
CHECKPOINT_PREFIX = "cp_"

# Default layout under the state directory
DEFAULT_STATE_DIRNAME = ".scaffold"
EVIDENCE_SUBDIR = "evidence"
CHECKPOINT_SUBDIR = "checkpoints"
LOCK_SUBDIR = "locks"

# Optional YAML config file looked up in the workspace root
CONFIG_FILENAME = "scaffold.yaml"

# Mode applied to plan files marked executable (rwxr-xr-x)
EXECUTABLE_MODE = 0o755

# Entries that do not make a target directory "non-empty"
HARMLESS_ENTRIES = frozenset({
    ".gitignore",
    ".gitattributes",
    ".gitkeep",
    ".git",
    "README.md",
    "readme.md",
    "README",
    "LICENSE",
    "LICENSE.md",
    "license",
    ".DS_Store",
    "Thumbs.db",
    ".editorconfig",
    ".idea",
    ".vscode",
})

# Number of paths shown in conflict summaries before truncating
SUMMARY_PREVIEW_LIMIT = int(os.getenv("SCAFFOLD_APPLY_PREVIEW_LIMIT", "5"))
