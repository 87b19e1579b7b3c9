"""Applying or rejecting agent change proposals.

Applying writes the proposed text over the comment's anchored span in the
file on disk, marks the proposal applied (which re-anchors the comment to
the new text), and then lets the store reconcile every anchor in that
file against the new content.
"""

from pathlib import Path

from cowrite.anchors import apply_edit, find_anchor
from cowrite.logger import get_logger
from cowrite.models import Comment, ProposalStatus
from cowrite.store import (
    CommentNotFound,
    CommentStore,
    InvalidTarget,
    InvalidTransition,
    ProposalNotFound,
)
from cowrite.storage import atomic_write_text


class StaleProposal(ValueError):  # noqa: N818
    """Raised when the proposal's original text is no longer in the file."""

    pass


def _locate(comment: Comment, content: str, old_text: str, window: int) -> int:
    if content[comment.offset : comment.offset + len(old_text)] == old_text:
        return comment.offset
    idx = find_anchor(comment.model_copy(update={"selected_text": old_text}), content, window)
    if idx is None:
        raise StaleProposal(
            f"Text targeted by the proposal on comment {comment.id} is no longer near offset {comment.offset}"
        )
    return idx


def apply_proposal(store: CommentStore, comment_id: str, reply_id: str) -> Comment:
    """Write a proposal into its file and mark it applied.

    Args:
        store: Store owning the comment
        comment_id: Comment the proposal belongs to
        reply_id: Reply carrying the proposal

    Returns:
        The updated comment

    Raises:
        CommentNotFound: If the comment does not exist
        ProposalNotFound: If the reply does not exist or has no proposal
        InvalidTarget: If the comment is a whole-file comment
        InvalidTransition: If the proposal was already applied or rejected
        StaleProposal: If the original text can no longer be found
        OSError: If the file cannot be read or written
    """
    comment = store.get(comment_id)
    if comment is None:
        raise CommentNotFound(comment_id)
    if comment.is_whole_file:
        raise InvalidTarget(f"Comment {comment_id} is a file-level comment; it has no text to replace")

    reply = comment.find_reply(reply_id)
    if reply is None or reply.proposal is None:
        raise ProposalNotFound(comment_id, reply_id)
    proposal = reply.proposal
    if proposal.status != ProposalStatus.PENDING:
        raise InvalidTransition(f"Proposal {reply_id} on comment {comment_id} is already {proposal.status.value}")

    path = Path(comment.file)
    old_content = path.read_text(encoding="utf-8")
    start = _locate(comment, old_content, proposal.old_text, store.search_window)
    new_content = apply_edit(old_content, start, len(proposal.old_text), proposal.new_text)

    atomic_write_text(new_content, path)
    get_logger().debug("Proposal applied", comment=comment_id, reply=reply_id, file=comment.file)

    # The comment now anchors the new text, so reconciliation finds it at `start`
    updated = store.update_proposal_status(comment_id, reply_id, ProposalStatus.APPLIED)
    store.adjust_offsets(comment.file, old_content, new_content)
    return store.get(comment_id) or updated


def reject_proposal(store: CommentStore, comment_id: str, reply_id: str) -> Comment:
    """Mark a proposal rejected without touching the file.

    Raises:
        CommentNotFound: If the comment does not exist
        ProposalNotFound: If the reply does not exist or has no proposal
        InvalidTransition: If the proposal was already applied or rejected
    """
    return store.update_proposal_status(comment_id, reply_id, ProposalStatus.REJECTED)
