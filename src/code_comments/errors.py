"""Base exception for the comment anchoring engine.

Concrete errors are defined next to the code that raises them:
- MalformedDiffError in code_comments.diff
- UnpushedRangeError in code_comments.remap
- GitError, RevisionResolutionError and friends in code_comments.git_ops
"""


class CodeCommentsError(Exception):
    """Base class for all errors raised by code_comments."""

    pass
