"""
Error taxonomy for the LF Blog compiler.

Node-local problems are reported as Issue records and never abort a pass.
Exceptions are raised where a stage cannot produce its result at all.
"""

from typing import Optional


WARNING = 'warning'
ERROR = 'error'


class BuildError(Exception):
    """Base class for compiler errors."""

    kind = 'build'

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id

    def to_issue(self) -> 'Issue':
        return Issue(self.kind, self.node_id, str(self), ERROR)


class SourceReadError(BuildError):
    """A source file or directory could not be read."""

    kind = 'source-read'


class TemplateError(BuildError):
    """A template is missing or failed to render."""

    kind = 'template'


class ThemeError(TemplateError):
    """A theme could not be resolved or is missing required templates."""


class PublishIOError(BuildError):
    """Writing, staging or swapping output failed."""

    kind = 'publish'

    def __init__(self, message: str, node_id: Optional[str] = None, fatal: bool = False):
        super().__init__(message, node_id)
        self.fatal = fatal


class RecommenderError(BuildError):
    """The similarity pass failed as a whole."""

    kind = 'recommender'


class Issue:
    """A reported problem tied to a node (or to the whole pass when node_id is None)."""

    __slots__ = ('kind', 'node_id', 'message', 'severity')

    def __init__(self, kind: str, node_id: Optional[str], message: str, severity: str = WARNING):
        self.kind = kind
        self.node_id = node_id
        self.message = message
        self.severity = severity

    @property
    def is_error(self) -> bool:
        return self.severity == ERROR

    def as_dict(self):
        return {
            'kind': self.kind,
            'node': self.node_id,
            'message': self.message,
            'severity': self.severity,
        }

    def __eq__(self, other):
        if not isinstance(other, Issue):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __hash__(self):
        return hash((self.kind, self.node_id, self.message, self.severity))

    def __repr__(self):
        return f"Issue({self.severity} {self.kind} {self.node_id!r}: {self.message})"
