"""Decision protocol: structured choices for blocking conditions.

The executor never waits for a human. When it needs input it returns a
DecisionRequest; the caller renders the options, collects selections
(check_id -> option_id) and calls apply_resolutions() to get the context for
the next invocation.
"""

import dataclasses
from pathlib import Path
from typing import List, Mapping, Optional

from typing_extensions import assert_never

from scaffold_apply.constants import SUMMARY_PREVIEW_LIMIT
from scaffold_apply.models import (
    ApplyContext,
    ConflictAction,
    ConflictCheckResult,
    ConflictReason,
    DecisionCheck,
    DecisionRequest,
    DecisionType,
    Modifications,
    ResolutionKind,
    ResolutionOption,
)

CONFLICT_CHECK_ID = "scaffold_conflict"
REPLACE_CONFIRM_CHECK_ID = "scaffold_replace_confirm"


def _conflict_option(
    action: ConflictAction,
    result: ConflictCheckResult,
    new_dir_suggestion: Optional[Path],
) -> ResolutionOption:
    if action == ConflictAction.CHOOSE_NEW_DIR:
        if new_dir_suggestion is not None:
            # A confirmation given for the old target must not carry over
            return ResolutionOption(
                id=action.value,
                label=f"Create in {new_dir_suggestion.name}/ instead",
                description=f"Scaffold into {new_dir_suggestion} (recommended)",
                modifications=Modifications(
                    target_directory=str(new_dir_suggestion),
                    replace_confirmed=False,
                ),
                primary=True,
            )
        return ResolutionOption(
            id=action.value,
            label="Choose Different Folder",
            description="Select a different location for the project (recommended)",
            modifications=Modifications(conflict_mode=ConflictAction.CHOOSE_NEW_DIR),
            primary=True,
        )
    elif action == ConflictAction.MERGE_SAFE_ONLY:
        existing = result.count(ConflictReason.EXISTS)
        return ResolutionOption(
            id=action.value,
            label="Merge (Skip Existing)",
            description=(
                f"Create new files only, skip {existing} existing file(s)"
                if existing else "Create files alongside existing content"
            ),
            modifications=Modifications(conflict_mode=ConflictAction.MERGE_SAFE_ONLY),
        )
    elif action == ConflictAction.REPLACE_ALL:
        return ResolutionOption(
            id=action.value,
            label="Replace All",
            description="Delete existing content and create fresh (requires confirmation)",
            modifications=Modifications(
                conflict_mode=ConflictAction.REPLACE_ALL,
                replace_confirmed=False,
            ),
            destructive=True,
        )
    elif action == ConflictAction.CANCEL:
        return ResolutionOption(
            id=action.value,
            label="Cancel",
            description="Cancel the scaffold operation",
            action=ResolutionKind.CANCEL,
        )
    else:
        assert_never(action)


def build_conflict_decision(
    result: ConflictCheckResult,
    target_directory: Path,
    new_dir_suggestion: Optional[Path] = None,
) -> DecisionRequest:
    """
    Build the scaffold_conflict decision from a conflict check.

    Options follow result.suggested_actions, so their order is the
    detector's: least destructive first, cancel last.
    """
    options = [_conflict_option(a, result, new_dir_suggestion) for a in result.suggested_actions]
    return DecisionRequest(
        decision_type=DecisionType.SCAFFOLD_CONFLICT,
        title="Resolve Scaffold Conflict",
        description=result.summary,
        target_directory=str(target_directory),
        checks=[DecisionCheck(id=CONFLICT_CHECK_ID, message=result.summary, options=options)],
    )


def build_replace_confirm_decision(
    target_directory: Path,
    files_to_delete: List[str],
) -> DecisionRequest:
    """Second, distinct confirmation required before replace_all deletes anything."""
    shown = ", ".join(files_to_delete[:SUMMARY_PREVIEW_LIMIT])
    if len(files_to_delete) > SUMMARY_PREVIEW_LIMIT:
        shown += "..."
    message = (
        f"This will DELETE all existing files in {target_directory} "
        f"({len(files_to_delete)} file(s){': ' + shown if shown else ''}). This cannot be undone."
    )
    options = [
        ResolutionOption(
            id="go_back",
            label="Go Back",
            description="Return to previous options",
            modifications=Modifications(
                reset_conflict_mode=True,
                replace_confirmed=False,
            ),
            primary=True,
        ),
        ResolutionOption(
            id="confirm_replace",
            label="Confirm Replace",
            description="I understand this will delete existing files",
            modifications=Modifications(
                conflict_mode=ConflictAction.REPLACE_ALL,
                replace_confirmed=True,
            ),
            destructive=True,
        ),
    ]
    return DecisionRequest(
        decision_type=DecisionType.SCAFFOLD_REPLACE_CONFIRM,
        title="Confirm Replace All",
        description=message,
        target_directory=str(target_directory),
        checks=[DecisionCheck(id=REPLACE_CONFIRM_CHECK_ID, message=message, options=options)],
    )


def apply_resolutions(
    context: ApplyContext,
    prior: DecisionRequest,
    selections: Mapping[str, str],
) -> Optional[ApplyContext]:
    """
    Fold selected options into a copy of the context.

    Args:
        context: Context of the invocation that asked for input
        prior: The decision request that invocation returned
        selections: check_id -> option_id, applied in iteration order

    Returns:
        Updated context, or None if any selected option cancels. Unknown
        check or option ids are ignored. The input context is not modified.
    """
    updated = dataclasses.replace(context)

    for check_id, option_id in selections.items():
        check = prior.check(check_id)
        if check is None:
            continue
        option = check.option(option_id)
        if option is None:
            continue

        if option.action == ResolutionKind.CANCEL:
            return None
        elif option.action == ResolutionKind.MODIFY:
            mods = option.modifications
            if mods is None:
                continue
            if mods.target_directory is not None:
                updated = dataclasses.replace(updated, target_directory=Path(mods.target_directory))
            if mods.reset_conflict_mode:
                updated = dataclasses.replace(updated, conflict_mode=None)
            elif mods.conflict_mode is not None:
                updated = dataclasses.replace(updated, conflict_mode=mods.conflict_mode)
            if mods.replace_confirmed is not None:
                updated = dataclasses.replace(updated, replace_confirmed=mods.replace_confirmed)
        else:
            assert_never(option.action)

    return updated
