"""Tests for diff sources: committed diffs, buffer diffs and routing."""

import pytest

from code_comments.diff import DiffModel, MalformedDiffError
from code_comments.documents import DocumentNotOpenError, LiveDocuments
from code_comments.models import BUFFER_REVISION, DiffKey
from code_comments.remap import remap_line
from code_comments.sources import BufferDiffSource, CommittedDiffSource, ScmDiffSource

REPO = "/work/repo"
REV_A = "a" * 40
REV_B = "b" * 40


class TestCommittedDiffSource:
    """Tests for parsing SCM diffs."""

    @pytest.mark.asyncio
    async def test_parses_scm_output(self, fake_scm) -> None:
        """The SCM's unified diff becomes a DiffModel."""
        fake_scm.diffs[("a.py", REV_A, REV_B)] = "@@ -2,0 +3 @@\n+new line\n"

        model = await CommittedDiffSource(fake_scm).load(DiffKey(REPO, "a.py", REV_A, REV_B))

        assert model.added_count == 1
        assert model.line_offset(5) == 1
        assert fake_scm.diff_calls == [("a.py", REV_A, REV_B)]

    @pytest.mark.asyncio
    async def test_malformed_output_raises(self, fake_scm) -> None:
        """Unparseable SCM output is reported, not ignored."""
        fake_scm.diffs[("a.py", REV_A, REV_B)] = "@@ -1 +1 @@\n?what\n"

        with pytest.raises(MalformedDiffError):
            await CommittedDiffSource(fake_scm).load(DiffKey(REPO, "a.py", REV_A, REV_B))


class TestBufferDiffSource:
    """Tests for diffing committed content against open buffers."""

    @pytest.mark.asyncio
    async def test_committed_to_buffer(self, fake_scm) -> None:
        """Lines inserted in the buffer shift later lines down."""
        documents = LiveDocuments()
        fake_scm.files[("a.py", REV_A)] = "one\ntwo\nthree\n"
        documents.set_text(REPO, "a.py", "zero\none\ntwo\nthree\n")

        model = await BufferDiffSource(fake_scm, documents).load(
            DiffKey(REPO, "a.py", REV_A, BUFFER_REVISION)
        )

        assert remap_line(model, 2).line == 3

    @pytest.mark.asyncio
    async def test_buffer_to_committed(self, fake_scm) -> None:
        """The reverse direction maps buffer lines back to the revision."""
        documents = LiveDocuments()
        fake_scm.files[("a.py", REV_A)] = "one\ntwo\nthree\n"
        documents.set_text(REPO, "a.py", "zero\none\ntwo\nthree\n")

        model = await BufferDiffSource(fake_scm, documents).load(
            DiffKey(REPO, "a.py", BUFFER_REVISION, REV_A)
        )

        assert remap_line(model, 3).line == 2
        assert remap_line(model, 1).line is None

    @pytest.mark.asyncio
    async def test_form_feed_does_not_shift_lines(self, fake_scm) -> None:
        """Buffer lines are numbered the way the editor numbers them."""
        documents = LiveDocuments()
        fake_scm.files[("a.py", REV_A)] = "one\ntwo\n"
        documents.set_text(REPO, "a.py", "one\f!\ntwo\n")

        model = await BufferDiffSource(fake_scm, documents).load(
            DiffKey(REPO, "a.py", REV_A, BUFFER_REVISION)
        )

        assert remap_line(model, 2).line == 2

    @pytest.mark.asyncio
    async def test_closed_document(self, fake_scm) -> None:
        """A buffer diff needs an open buffer."""
        fake_scm.files[("a.py", REV_A)] = "one\n"

        with pytest.raises(DocumentNotOpenError):
            await BufferDiffSource(fake_scm, LiveDocuments()).load(
                DiffKey(REPO, "a.py", REV_A, BUFFER_REVISION)
            )


class RecordingSource:
    def __init__(self, name: str, calls: list[str]) -> None:
        self.name = name
        self.calls = calls

    async def load(self, key: DiffKey) -> DiffModel:
        self.calls.append(self.name)
        return DiffModel()


class TestScmDiffSource:
    """Tests for routing keys to the right source."""

    @pytest.mark.asyncio
    async def test_routing(self) -> None:
        """Buffer keys go to the buffer source, committed keys to the committed source."""
        calls: list[str] = []
        source = ScmDiffSource(RecordingSource("committed", calls), RecordingSource("buffer", calls))

        await source.load(DiffKey(REPO, "a.py", REV_A, REV_B))
        await source.load(DiffKey(REPO, "a.py", REV_A, BUFFER_REVISION))
        await source.load(DiffKey(REPO, "a.py", BUFFER_REVISION, REV_A))

        assert calls == ["committed", "buffer", "buffer"]

    @pytest.mark.asyncio
    async def test_same_revision_is_identity(self) -> None:
        """Diffing a revision against itself never reaches a source."""
        calls: list[str] = []
        source = ScmDiffSource(RecordingSource("committed", calls), RecordingSource("buffer", calls))

        model = await source.load(DiffKey(REPO, "a.py", REV_A, REV_A))

        assert model.is_empty
        assert calls == []

    def test_for_scm_wires_both_sources(self, fake_scm) -> None:
        documents = LiveDocuments()
        source = ScmDiffSource.for_scm(fake_scm, documents)

        assert isinstance(source.committed, CommittedDiffSource)
        assert isinstance(source.buffer, BufferDiffSource)
        assert source.buffer.documents is documents
