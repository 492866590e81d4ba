"""In-memory registry of open document buffers with change notification."""

from collections.abc import Callable

from code_comments.diff import split_lines
from code_comments.errors import CodeCommentsError
from code_comments.log import get_logger

DocumentListener = Callable[[str, str], None]


class DocumentNotOpenError(CodeCommentsError):
    """Raised when buffer content is requested for a document that is not open."""

    pass


class LiveDocuments:
    """Holds the current (possibly unsaved) text of open documents.

    Documents are keyed by (repo, path). Every set_text() call that changes
    the content notifies subscribers with (repo, path).
    """

    def __init__(self) -> None:
        self._texts: dict[tuple[str, str], str] = {}
        self._listeners: list[DocumentListener] = []

    def get_text(self, repo: str, path: str) -> str | None:
        return self._texts.get((repo, path))

    def get_lines(self, repo: str, path: str) -> list[str] | None:
        text = self.get_text(repo, path)
        return None if text is None else split_lines(text)

    def set_text(self, repo: str, path: str, text: str) -> None:
        """Replace a document's content and notify subscribers if it changed."""
        if self._texts.get((repo, path)) == text:
            return
        self._texts[(repo, path)] = text
        self._fire(repo, path)

    def close(self, repo: str, path: str) -> None:
        self._texts.pop((repo, path), None)

    def subscribe(self, listener: DocumentListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _fire(self, repo: str, path: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(repo, path)
            except Exception as e:
                # Remaining listeners still run
                get_logger().exception(f"Document listener failed for {path}", e)
