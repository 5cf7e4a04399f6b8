"""Backend remote procedures.

These run inside the backend store with the caller's identity and enforce
the rules the client must not own: direct-conversation uniqueness, group
admin checks and cross-participant visibility changes. Each takes an open
Session and leaves committing to the caller.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatcore.exceptions import InputValidationError, RecordNotFoundError
from chatcore.models import Conversation, ConversationParticipant, GroupMember, Message, Profile
from chatcore.schemas import ConversationRow, GroupRole

logger = logging.getLogger(__name__)


def _visible_conversation_ids(user_id: str):
    """Conversations the user participates in and has not hidden."""
    return select(ConversationParticipant.conversation_id).where(
        ConversationParticipant.user_id == user_id,
        or_(
            ConversationParticipant.hidden_for_user.is_(None),
            ConversationParticipant.hidden_for_user == False,  # noqa: E712
        ),
    )


def get_user_conversations(db: Session, user_id: str) -> List[ConversationRow]:
    """One row per (conversation, participant) for the user's visible conversations."""
    results = (
        db.query(Conversation, ConversationParticipant, Profile)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .outerjoin(Profile, Profile.id == ConversationParticipant.user_id)
        .filter(Conversation.id.in_(_visible_conversation_ids(user_id)))
        .all()
    )

    rows = []
    for conversation, participant, profile in results:
        rows.append(ConversationRow(
            conversation_id=conversation.id,
            conversation_created_at=conversation.created_at,
            conversation_updated_at=conversation.updated_at,
            conversation_last_message_at=conversation.last_message_at,
            conversation_is_group=bool(conversation.is_group),
            participant_id=participant.id,
            participant_user_id=participant.user_id,
            participant_joined_at=participant.joined_at,
            participant_last_read_at=participant.last_read_at,
            user_username=profile.username if profile else None,
            user_display_name=profile.display_name if profile else None,
            user_avatar_url=profile.avatar_url if profile else None,
            user_bio=profile.bio if profile else None,
        ))
    logger.debug(f"get_user_conversations({user_id}) -> {len(rows)} row(s)")
    return rows


def _direct_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a.lower(), user_b.lower()]))


def get_or_create_direct_conversation(db: Session, current_user_id: str, other_user_id: str) -> str:
    """Return the direct conversation for the pair, creating it on first use."""
    key = _direct_key(current_user_id, other_user_id)
    existing = db.query(Conversation).filter(Conversation.direct_key == key).first()
    if existing:
        logger.debug(f"Found existing direct conversation {existing.id}")
        for user_id in (current_user_id, other_user_id):
            ensure_participant(db, existing.id, user_id)
        return existing.id

    conversation = Conversation(is_group=False, direct_key=key)
    conversation.participants = [
        ConversationParticipant(user_id=current_user_id),
        ConversationParticipant(user_id=other_user_id),
    ]
    db.add(conversation)
    try:
        db.flush()
    except IntegrityError:
        # Another caller created the pair first
        db.rollback()
        existing = db.query(Conversation).filter(Conversation.direct_key == key).one()
        return existing.id

    logger.info(f"Created direct conversation {conversation.id} for {key}")
    return conversation.id


def ensure_participant(db: Session, conversation_id: str, user_id: str) -> bool:
    """Insert a participant row if absent; True if one was created."""
    exists = db.query(ConversationParticipant.id).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).first()
    if exists:
        return False
    db.add(ConversationParticipant(conversation_id=conversation_id, user_id=user_id))
    db.flush()
    return True


def unhide_conversation_for_all_participants(db: Session, conversation_id: str) -> int:
    updated = db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.hidden_for_user == True,  # noqa: E712
    ).update(
        {"hidden_for_user": False, "hidden_at": None},
        synchronize_session=False,
    )
    if updated:
        logger.info(f"Unhid conversation {conversation_id} for {updated} participant(s)")
    return updated


def clear_message_cutoff_for_user(db: Session, conversation_id: str, user_id: str) -> None:
    db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).update({"messages_hidden_since": None}, synchronize_session=False)


def _require_profiles(db: Session, user_ids: List[str]) -> None:
    if not user_ids:
        return
    found = {row[0] for row in db.query(Profile.id).filter(Profile.id.in_(user_ids)).all()}
    missing = [user_id for user_id in user_ids if user_id not in found]
    if missing:
        raise RecordNotFoundError(f"User profile not found: {', '.join(missing)}")


def _is_admin(db: Session, conversation_id: str, user_id: str) -> bool:
    return db.query(GroupMember.id).filter(
        GroupMember.conversation_id == conversation_id,
        GroupMember.user_id == user_id,
        GroupMember.role == GroupRole.ADMIN.value,
    ).first() is not None


def create_group_chat(
    db: Session,
    caller_id: str,
    group_name: str,
    group_description: Optional[str],
    member_ids: List[str],
    group_emoji: Optional[str] = None,
) -> str:
    """Create a group with the caller as admin and everyone else as members."""
    if not group_name or not group_name.strip():
        raise InputValidationError("Group name cannot be empty")

    # Remove duplicates and the caller while preserving order
    unique_ids = []
    for member_id in member_ids:
        if member_id != caller_id and member_id not in unique_ids:
            unique_ids.append(member_id)
    _require_profiles(db, [caller_id] + unique_ids)

    conversation = Conversation(
        is_group=True,
        group_name=group_name.strip(),
        group_description=group_description,
        group_emoji=group_emoji,
        created_by=caller_id,
    )
    conversation.members = [GroupMember(user_id=caller_id, role=GroupRole.ADMIN.value)] + [
        GroupMember(user_id=member_id, role=GroupRole.MEMBER.value) for member_id in unique_ids
    ]
    conversation.participants = [
        ConversationParticipant(user_id=user_id) for user_id in [caller_id] + unique_ids
    ]
    db.add(conversation)
    db.flush()

    logger.info(
        f"Created group chat {conversation.id}: name='{conversation.group_name}', "
        f"admin={caller_id}, members={unique_ids}"
    )
    return conversation.id


def add_group_member(db: Session, caller_id: str, conversation_id: str, user_id: str) -> bool:
    if not _is_admin(db, conversation_id, caller_id):
        logger.warning(f"User {caller_id} denied adding members to {conversation_id}: not an admin")
        return False
    _require_profiles(db, [user_id])

    already_member = db.query(GroupMember.id).filter(
        GroupMember.conversation_id == conversation_id,
        GroupMember.user_id == user_id,
    ).first()
    if not already_member:
        db.add(GroupMember(conversation_id=conversation_id, user_id=user_id, role=GroupRole.MEMBER.value))
    ensure_participant(db, conversation_id, user_id)
    db.flush()
    logger.info(f"User {caller_id} added {user_id} to group {conversation_id}")
    return True


def remove_group_member(db: Session, caller_id: str, conversation_id: str, user_id: str) -> bool:
    if not _is_admin(db, conversation_id, caller_id):
        logger.warning(f"User {caller_id} denied removing members from {conversation_id}: not an admin")
        return False

    removed = db.query(GroupMember).filter(
        GroupMember.conversation_id == conversation_id,
        GroupMember.user_id == user_id,
    ).delete(synchronize_session=False)
    db.query(ConversationParticipant).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).delete(synchronize_session=False)
    logger.info(f"User {caller_id} removed {user_id} from group {conversation_id} (removed={removed})")
    return removed > 0


def get_user_group_conversations(db: Session, user_id: str) -> List[Dict]:
    """Group conversations of the user with last-message attribution."""
    groups = (
        db.query(Conversation)
        .filter(
            Conversation.is_group == True,  # noqa: E712
            Conversation.id.in_(_visible_conversation_ids(user_id)),
        )
        .all()
    )

    latest_times = (
        select(Message.conversation_id, func.max(Message.created_at).label("latest"))
        .group_by(Message.conversation_id)
        .subquery()
    )
    latest_by_group = {}
    if groups:
        latest_rows = (
            db.query(Message, Profile)
            .join(latest_times, and_(
                Message.conversation_id == latest_times.c.conversation_id,
                Message.created_at == latest_times.c.latest,
            ))
            .outerjoin(Profile, Profile.id == Message.sender_id)
            .filter(Message.conversation_id.in_([g.id for g in groups]))
            .all()
        )
        for message, profile in latest_rows:
            latest_by_group[message.conversation_id] = (message, profile)

    results = []
    for group in groups:
        message, profile = latest_by_group.get(group.id, (None, None))
        results.append({
            "id": group.id,
            "is_group": True,
            "group_name": group.group_name,
            "group_description": group.group_description,
            "group_avatar_url": group.group_avatar_url,
            "group_emoji": group.group_emoji,
            "created_by": group.created_by,
            "created_at": group.created_at,
            "updated_at": group.updated_at,
            "last_message_at": group.last_message_at,
            "last_message_sender_id": message.sender_id if message else None,
            "last_message_sender_username": profile.username if profile else None,
        })
    logger.debug(f"get_user_group_conversations({user_id}) -> {len(results)} group(s)")
    return results
