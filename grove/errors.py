"""Exception hierarchy for Grove.

Every failure the core can report has its own type so callers (CLI, daemon)
can decide how to render it without parsing messages.
"""

from typing import Optional, Sequence


class GroveError(Exception):
    """Base exception for all Grove errors."""


class RepositoryError(GroveError):
    """A storage operation failed for a reason other than the typed cases below."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class NotFoundError(GroveError):
    """An entity or short-ID prefix matched nothing."""

    def __init__(self, entity_type: str, identifier: str):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"{entity_type} '{identifier}' not found")


class AmbiguousIdError(GroveError):
    """A short-ID prefix matched more than one entity."""

    def __init__(self, entity_type: str, prefix: str, matches: Sequence[str]):
        self.entity_type = entity_type
        self.prefix = prefix
        self.matches = list(matches)
        shown = ", ".join(m.replace("-", "")[:8] for m in self.matches[:3])
        more = "..." if len(self.matches) > 3 else ""
        super().__init__(
            f"Ambiguous ID prefix '{prefix}' for {entity_type} "
            f"({len(self.matches)} matches: {shown}{more})"
        )


class AlreadyExistsError(GroveError):
    """A slug, name or path is already taken."""

    def __init__(self, entity_type: str, identifier: str, detail: str = ""):
        self.entity_type = entity_type
        self.identifier = identifier
        message = f"{entity_type} '{identifier}' already exists"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DuplicateNameError(AlreadyExistsError):
    """A worktree name is already used on the same repository."""

    def __init__(self, repo_slug: str, name: str):
        self.repo_slug = repo_slug
        super().__init__("Worktree", name, f"repository '{repo_slug}' already has a worktree with this name")


class InvalidStateError(GroveError):
    """The requested operation conflicts with the entity's current state."""


class ExternalToolError(GroveError):
    """A version-control subprocess failed or could not be started."""

    def __init__(self, command: Sequence[str], returncode: Optional[int], stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        shown = " ".join(self.command)
        if returncode is None:
            message = f"Could not run '{shown}'"
        else:
            message = f"'{shown}' exited with status {returncode}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class SegmentationError(GroveError):
    """Task ranges produced by transcript segmentation overlap or leave gaps."""

    def __init__(self, gaps: Sequence[int] = (), overlaps: Sequence[int] = ()):
        self.gaps = list(gaps)
        self.overlaps = list(overlaps)
        parts = []
        if self.gaps:
            parts.append(f"messages not covered by any task: {self.gaps[:10]}")
        if self.overlaps:
            parts.append(f"messages claimed by more than one task: {self.overlaps[:10]}")
        super().__init__("Inconsistent task segmentation (" + "; ".join(parts) + ")")


class BatchImportError(GroveError):
    """One batch of a bulk import failed; earlier batches are already committed."""

    def __init__(
        self,
        stage: str,
        batch_index: int,
        start: int,
        end: int,
        session_id: str,
        cause: Optional[BaseException] = None,
    ):
        self.stage = stage
        self.batch_index = batch_index
        self.start = start
        self.end = end
        self.session_id = session_id
        self.cause = cause
        super().__init__(
            f"Import of {stage} batch {batch_index} (items {start}-{end - 1}) "
            f"for session {session_id[:8]} failed: {cause}"
        )
