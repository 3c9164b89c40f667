"""Data model for the scaffold apply engine.

Plans and contexts come from the caller; conflict results and decision
requests are computed per invocation; checkpoints and manifests are the only
records that get persisted (see checkpoint.py and manifest.py).
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ScaffoldApplyError(Exception):
    """Base class for errors raised inside the apply engine."""
    pass


# --- Tag sets ---

class PlanItemKind(str, Enum):
    DIR = "dir"
    LINK = "link"
    FILE = "file"


class ConflictReason(str, Enum):
    EXISTS = "exists"
    DIR_NOT_EMPTY = "dir_not_empty"
    OUTSIDE_WORKSPACE = "outside_workspace"


class ConflictAction(str, Enum):
    CHOOSE_NEW_DIR = "choose_new_dir"
    MERGE_SAFE_ONLY = "merge_safe_only"
    REPLACE_ALL = "replace_all"
    CANCEL = "cancel"


class EntryType(str, Enum):
    FILE = "file"
    DIR = "dir"
    LINK = "link"


class ApplyStrategy(str, Enum):
    CHECKPOINT = "checkpoint"
    TEMP_STAGING = "temp_staging"


class ApplyStage(str, Enum):
    """Stage reported on failure."""
    PRECHECK = "precheck"
    MKDIR = "mkdir"
    WRITE = "write"
    FINALIZE = "finalize"


class ApplyState(str, Enum):
    """States of the apply state machine."""
    INIT = "INIT"
    REPLAY_CHECK = "REPLAY_CHECK"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    CONFLICT_CHECK = "CONFLICT_CHECK"
    NEEDS_DECISION = "NEEDS_DECISION"
    CHECKPOINT = "CHECKPOINT"
    WRITE = "WRITE"
    MANIFEST_WRITE = "MANIFEST_WRITE"
    DONE = "DONE"
    ROLLBACK = "ROLLBACK"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DecisionType(str, Enum):
    SCAFFOLD_CONFLICT = "scaffold_conflict"
    SCAFFOLD_REPLACE_CONFIRM = "scaffold_replace_confirm"


class ResolutionKind(str, Enum):
    MODIFY = "modify"
    CANCEL = "cancel"


# --- Plan ---

@dataclass
class PlanItem:
    """A directory marker or a file to materialize."""
    kind: PlanItemKind
    path: str
    content: Optional[str] = None
    executable: bool = False

    @property
    def is_file(self) -> bool:
        return self.kind == PlanItemKind.FILE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value, "path": self.path}
        if self.is_file:
            data["content"] = self.content or ""
            if self.executable:
                data["executable"] = True
        return data


@dataclass
class PlannedCommand:
    """A post-apply command recorded in the manifest. Never executed here."""
    label: str
    cmd: str
    when: str = "post_apply"

    def to_dict(self) -> Dict[str, str]:
        return {"label": self.label, "cmd": self.cmd, "when": self.when}


@dataclass
class ScaffoldPlan:
    """Ordered list of plan items produced upstream (template or model)."""
    recipe_id: str
    items: List[PlanItem] = field(default_factory=list)
    commands: List[PlannedCommand] = field(default_factory=list)

    def files(self) -> List[PlanItem]:
        return [item for item in self.items if item.kind == PlanItemKind.FILE]

    def dirs(self) -> List[PlanItem]:
        return [item for item in self.items if item.kind == PlanItemKind.DIR]


# --- Conflicts ---

@dataclass
class ConflictRecord:
    path: str
    reason: ConflictReason
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "path": self.path,
            "reason": self.reason.value,
            "description": self.description,
        }


@dataclass
class ConflictCheckResult:
    """Outcome of one detection pass. Never persisted."""
    has_conflicts: bool
    conflicts: List[ConflictRecord] = field(default_factory=list)
    suggested_actions: List[ConflictAction] = field(default_factory=list)
    default_action: ConflictAction = ConflictAction.CHOOSE_NEW_DIR
    summary: str = ""

    def count(self, reason: ConflictReason) -> int:
        return sum(1 for c in self.conflicts if c.reason == reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_conflicts": self.has_conflicts,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "suggested_actions": [a.value for a in self.suggested_actions],
            "default_action": self.default_action.value,
            "summary": self.summary,
        }


# --- Checkpoint ---

@dataclass
class CheckpointEntry:
    type: EntryType
    path: str
    content: Optional[str] = None  # file content, or the link target for links
    encoding: Optional[str] = None  # "utf-8" | "base64", files only
    mode: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value, "path": self.path}
        if self.content is not None:
            data["content"] = self.content
        if self.encoding is not None:
            data["encoding"] = self.encoding
        if self.mode is not None:
            data["mode"] = self.mode
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointEntry":
        return cls(
            type=EntryType(data["type"]),
            path=data["path"],
            content=data.get("content"),
            encoding=data.get("encoding"),
            mode=data.get("mode"),
        )


@dataclass
class Checkpoint:
    """Snapshot of a target directory before mutation."""
    id: str
    created_at: str
    target_directory: str
    entries: List[CheckpointEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "target_directory": self.target_directory,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            target_directory=data["target_directory"],
            entries=[CheckpointEntry.from_dict(e) for e in data.get("entries", [])],
        )


# --- Manifest ---

@dataclass
class ManifestFile:
    path: str
    sha256: str
    bytes: int
    mode: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"path": self.path, "sha256": self.sha256, "bytes": self.bytes}
        if self.mode is not None:
            data["mode"] = self.mode
        return data


@dataclass
class ApplyManifest:
    """Durable proof that an apply completed. Written once per scaffold_id."""
    scaffold_id: str
    recipe_id: str
    target_directory: str
    created_at: str
    files: List[ManifestFile] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)
    commands_planned: Optional[List[Dict[str, str]]] = None
    skipped_files: Optional[List[str]] = None
    checkpoint_id: Optional[str] = None
    strategy: ApplyStrategy = ApplyStrategy.CHECKPOINT
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "scaffold_id": self.scaffold_id,
            "recipe_id": self.recipe_id,
            "target_directory": self.target_directory,
            "created_at": self.created_at,
            "files": [f.to_dict() for f in self.files],
            "dirs": list(self.dirs),
            "strategy": self.strategy.value,
            "duration_ms": self.duration_ms,
        }
        if self.commands_planned:
            data["commands_planned"] = self.commands_planned
        if self.skipped_files:
            data["skipped_files"] = list(self.skipped_files)
        if self.checkpoint_id:
            data["checkpoint_id"] = self.checkpoint_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplyManifest":
        return cls(
            scaffold_id=data["scaffold_id"],
            recipe_id=data.get("recipe_id", ""),
            target_directory=data["target_directory"],
            created_at=data["created_at"],
            files=[
                ManifestFile(
                    path=f["path"],
                    sha256=f["sha256"],
                    bytes=f["bytes"],
                    mode=f.get("mode"),
                )
                for f in data.get("files", [])
            ],
            dirs=list(data.get("dirs", [])),
            commands_planned=data.get("commands_planned"),
            skipped_files=data.get("skipped_files"),
            checkpoint_id=data.get("checkpoint_id"),
            strategy=ApplyStrategy(data.get("strategy", ApplyStrategy.CHECKPOINT.value)),
            duration_ms=data.get("duration_ms", 0),
        )


@dataclass
class IntegrityReport:
    valid: bool
    missing_files: List[str] = field(default_factory=list)
    hash_mismatches: List[str] = field(default_factory=list)


# --- Decisions ---

@dataclass
class Modifications:
    """Fields a resolution option changes on the apply context."""
    target_directory: Optional[str] = None
    conflict_mode: Optional[ConflictAction] = None
    reset_conflict_mode: bool = False  # back to "no answer yet"
    replace_confirmed: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.target_directory is not None:
            data["target_directory"] = self.target_directory
        if self.reset_conflict_mode:
            data["conflict_mode"] = None
        elif self.conflict_mode is not None:
            data["conflict_mode"] = self.conflict_mode.value
        if self.replace_confirmed is not None:
            data["replace_confirmed"] = self.replace_confirmed
        return data


@dataclass
class ResolutionOption:
    id: str
    label: str
    description: str
    action: ResolutionKind = ResolutionKind.MODIFY
    modifications: Optional[Modifications] = None
    primary: bool = False
    destructive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "action": self.action.value,
            "primary": self.primary,
            "destructive": self.destructive,
        }
        if self.modifications is not None:
            data["modifications"] = self.modifications.to_dict()
        return data


@dataclass
class DecisionCheck:
    """One blocking condition and the options that resolve it."""
    id: str
    message: str
    options: List[ResolutionOption] = field(default_factory=list)

    def option(self, option_id: str) -> Optional[ResolutionOption]:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass
class DecisionRequest:
    """Structured payload a UI renders as a set of choices."""
    decision_type: DecisionType
    title: str
    description: str
    target_directory: str
    checks: List[DecisionCheck] = field(default_factory=list)

    def check(self, check_id: str) -> Optional[DecisionCheck]:
        for c in self.checks:
            if c.id == check_id:
                return c
        return None

    def options(self) -> List[ResolutionOption]:
        return [opt for c in self.checks for opt in c.options]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_type": self.decision_type.value,
            "title": self.title,
            "description": self.description,
            "target_directory": self.target_directory,
            "checks": [c.to_dict() for c in self.checks],
        }


# --- Invocation ---

@dataclass
class ApplyContext:
    """Per-invocation input. Owned by the caller, rebuilt between attempts."""
    scaffold_id: str
    plan: ScaffoldPlan
    workspace_root: Path
    target_directory: Path
    conflict_mode: Optional[ConflictAction] = None
    replace_confirmed: bool = False
    is_replay: bool = False
    run_id: Optional[str] = None
    # Offered as the "create in a subfolder" option when conflicts are found
    suggested_directory: Optional[Path] = None


@dataclass
class ApplyResult:
    ok: bool
    state: ApplyState
    manifest_ref: Optional[str] = None
    created_files: Optional[List[str]] = None
    created_dirs: Optional[List[str]] = None
    skipped_files: Optional[List[str]] = None
    error: Optional[str] = None
    failed_stage: Optional[ApplyStage] = None
    failed_path: Optional[str] = None
    needs_input: bool = False
    pending_conflict: Optional[ConflictCheckResult] = None
    decision: Optional[DecisionRequest] = None
    checkpoint_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok, "state": self.state.value}
        if self.manifest_ref is not None:
            data["manifest_ref"] = self.manifest_ref
        if self.created_files is not None:
            data["created_files"] = self.created_files
        if self.created_dirs is not None:
            data["created_dirs"] = self.created_dirs
        if self.skipped_files is not None:
            data["skipped_files"] = self.skipped_files
        if self.error is not None:
            data["error"] = self.error
        if self.failed_stage is not None:
            data["failed_stage"] = self.failed_stage.value
        if self.failed_path is not None:
            data["failed_path"] = self.failed_path
        if self.needs_input:
            data["needs_input"] = True
        if self.pending_conflict is not None:
            data["pending_conflict"] = self.pending_conflict.to_dict()
        if self.decision is not None:
            data["decision"] = self.decision.to_dict()
        if self.checkpoint_id is not None:
            data["checkpoint_id"] = self.checkpoint_id
        return data
