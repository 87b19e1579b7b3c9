"""Tests for applying and rejecting change proposals."""

from pathlib import Path

import pytest

from cowrite.models import ProposalStatus
from cowrite.proposals import StaleProposal, apply_proposal, reject_proposal
from cowrite.store import (
    CommentNotFound,
    CommentStore,
    InvalidTarget,
    InvalidTransition,
    ProposalNotFound,
)


@pytest.fixture
def doc(tmp_path: Path) -> Path:
    path = tmp_path / "doc.md"
    path.write_text("Intro line.\nThe quick brown fox.\nOther comment: brown bear.\n", encoding="utf-8")
    return path


@pytest.fixture
def store() -> CommentStore:
    return CommentStore()


def comment_on(store: CommentStore, doc: Path, text: str, body: str = "fix"):
    content = doc.read_text(encoding="utf-8")
    offset = content.index(text)
    return store.add(str(doc), offset, len(text), text, body)


def test_apply_writes_file_and_reanchors(store, doc):
    target = comment_on(store, doc, "quick brown")
    later = comment_on(store, doc, "bear")
    reply = store.add_proposal_reply(target.id, "slow", "calmer")

    updated = apply_proposal(store, target.id, reply.id)

    content = doc.read_text(encoding="utf-8")
    assert content == "Intro line.\nThe slow fox.\nOther comment: brown bear.\n"
    assert updated.selected_text == "slow"
    assert updated.offset == content.index("slow")
    assert updated.find_reply(reply.id).proposal.status == ProposalStatus.APPLIED
    assert store.get(later.id).offset == content.index("bear")


def test_apply_finds_moved_text(store, doc):
    target = comment_on(store, doc, "quick brown")
    reply = store.add_proposal_reply(target.id, "lazy")
    doc.write_text("NEW HEADER\n" + doc.read_text(encoding="utf-8"), encoding="utf-8")

    apply_proposal(store, target.id, reply.id)

    assert "The lazy fox." in doc.read_text(encoding="utf-8")


def test_apply_stale_proposal(store, doc):
    target = comment_on(store, doc, "quick brown")
    reply = store.add_proposal_reply(target.id, "lazy")
    doc.write_text("Everything was rewritten.\n", encoding="utf-8")

    with pytest.raises(StaleProposal):
        apply_proposal(store, target.id, reply.id)

    assert doc.read_text(encoding="utf-8") == "Everything was rewritten.\n"
    assert store.get(target.id).replies[0].proposal.status == ProposalStatus.PENDING


def test_apply_unknown_comment(store):
    with pytest.raises(CommentNotFound):
        apply_proposal(store, "nope", "r1")


def test_apply_unknown_reply(store, doc):
    target = comment_on(store, doc, "quick brown")
    with pytest.raises(ProposalNotFound):
        apply_proposal(store, target.id, "missing")


def test_apply_whole_file_comment(store, doc):
    whole = store.add(str(doc), 0, 0, "", "overall")
    with pytest.raises(InvalidTarget):
        apply_proposal(store, whole.id, "any")


def test_reject_leaves_file_alone(store, doc):
    before = doc.read_text(encoding="utf-8")
    target = comment_on(store, doc, "quick brown")
    reply = store.add_proposal_reply(target.id, "slow")

    updated = reject_proposal(store, target.id, reply.id)

    assert doc.read_text(encoding="utf-8") == before
    assert updated.selected_text == "quick brown"
    assert updated.find_reply(reply.id).proposal.status == ProposalStatus.REJECTED


def test_apply_twice_rejected(store, doc):
    target = comment_on(store, doc, "quick brown")
    reply = store.add_proposal_reply(target.id, "quick brown!")
    apply_proposal(store, target.id, reply.id)
    after_first = doc.read_text(encoding="utf-8")

    with pytest.raises(InvalidTransition):
        apply_proposal(store, target.id, reply.id)

    assert doc.read_text(encoding="utf-8") == after_first
    assert "The quick brown! fox." in after_first


def test_apply_after_reject_rejected(store, doc):
    before = doc.read_text(encoding="utf-8")
    target = comment_on(store, doc, "quick brown")
    reply = store.add_proposal_reply(target.id, "slow")
    reject_proposal(store, target.id, reply.id)

    with pytest.raises(InvalidTransition):
        apply_proposal(store, target.id, reply.id)

    assert doc.read_text(encoding="utf-8") == before
    assert store.get(target.id).find_reply(reply.id).proposal.status == ProposalStatus.REJECTED


def test_reject_after_apply_rejected(store, doc):
    target = comment_on(store, doc, "quick brown")
    reply = store.add_proposal_reply(target.id, "slow")
    apply_proposal(store, target.id, reply.id)

    with pytest.raises(InvalidTransition):
        reject_proposal(store, target.id, reply.id)

    assert store.get(target.id).find_reply(reply.id).proposal.status == ProposalStatus.APPLIED
