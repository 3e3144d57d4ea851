"""The chat schema's row-level security policies."""
from typing import List, Optional

from .engine import Command, Policy, PolicyContext, PolicyEngine

RLS_TABLES = (
    "users",
    "profiles",
    "rooms",
    "room_members",
    "messages",
    "message_reads",
    "typing_indicators",
    "direct_conversations",
    "direct_participants",
    "direct_messages",
)


def _everyone(ctx: PolicyContext, row: dict) -> bool:
    return True


def _own_profile(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_self(row.get("id"))


def _own_row(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_self(row.get("user_id"))


def _own_room_in_reach(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_self(row.get("user_id")) and ctx.can_reach_room(row.get("room_id"))


def _room_is_public(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_room_public(row.get("room_id"))


def _room_member(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_room_member(row.get("room_id"))


def _message_room_public(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_room_public(ctx.room_of_message(row.get("message_id")))


def _message_room_member(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_room_member(ctx.room_of_message(row.get("message_id")))


def _own_read_in_reach(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_self(row.get("user_id")) and ctx.can_reach_room(ctx.room_of_message(row.get("message_id")))


def _in_conversation(ctx: PolicyContext, row: dict) -> bool:
    return ctx.is_participant(row.get("conversation_id"))


def build_policies() -> List[Policy]:
    return [
        # profiles
        Policy("Public profiles are viewable by everyone", "profiles", Command.SELECT,
               using=_everyone),
        Policy("Users can insert their own profile", "profiles", Command.INSERT,
               with_check=_own_profile),
        Policy("Users can update their own profile", "profiles", Command.UPDATE,
               using=_own_profile, with_check=_own_profile),

        # rooms
        Policy("Public rooms are viewable by everyone", "rooms", Command.SELECT,
               using=lambda ctx, row: row.get("is_private") is False),
        Policy("Users can view private rooms they are members of", "rooms", Command.SELECT,
               using=lambda ctx, row: ctx.is_room_member(row.get("id"))),
        Policy("Users can insert rooms", "rooms", Command.INSERT,
               with_check=lambda ctx, row: ctx.is_self(row.get("created_by"))),
        Policy("Users can update their own rooms", "rooms", Command.UPDATE,
               using=lambda ctx, row: ctx.is_self(row.get("created_by"))),

        # room_members
        Policy("Users can view their own room memberships", "room_members", Command.SELECT,
               using=_own_row),
        Policy("Users can view members of public rooms", "room_members", Command.SELECT,
               using=_room_is_public),
        Policy("Users can view members of their private rooms", "room_members", Command.SELECT,
               using=_room_member),
        Policy("Users can join rooms", "room_members", Command.INSERT,
               with_check=_own_row),
        Policy("Users can leave rooms", "room_members", Command.DELETE,
               using=_own_row),

        # messages
        Policy("Users can view messages in public rooms", "messages", Command.SELECT,
               using=_room_is_public),
        Policy("Users can view messages in their private rooms", "messages", Command.SELECT,
               using=_room_member),
        Policy("Users can send messages to their rooms", "messages", Command.INSERT,
               with_check=_own_room_in_reach),

        # message_reads
        Policy("Users can view read receipts for public room messages", "message_reads", Command.SELECT,
               using=_message_room_public),
        Policy("Users can view read receipts for their private room messages", "message_reads",
               Command.SELECT, using=_message_room_member),
        Policy("Users can insert their own message reads", "message_reads", Command.INSERT,
               with_check=_own_read_in_reach),

        # typing_indicators
        Policy("Users can see typing in public rooms", "typing_indicators", Command.SELECT,
               using=_room_is_public),
        Policy("Users can see typing in their private rooms", "typing_indicators", Command.SELECT,
               using=_room_member),
        Policy("Users can update their typing status", "typing_indicators", Command.INSERT,
               with_check=_own_room_in_reach),
        Policy("Users can refresh their typing status", "typing_indicators", Command.UPDATE,
               using=_own_room_in_reach),

        # direct messaging
        Policy("Users can view conversations they are in", "direct_conversations", Command.SELECT,
               using=lambda ctx, row: ctx.is_participant(row.get("id"))),
        Policy("Users can view participants in their conversations", "direct_participants",
               Command.SELECT, using=_in_conversation),
        Policy("Users can insert themselves as participants", "direct_participants", Command.INSERT,
               with_check=_own_row),
        Policy("Users can view messages in their conversations", "direct_messages", Command.SELECT,
               using=_in_conversation),
        Policy("Users can send messages to their conversations", "direct_messages", Command.INSERT,
               with_check=lambda ctx, row: ctx.is_self(row.get("sender_id")) and _in_conversation(ctx, row)),
    ]


def register_chat_policies(engine: PolicyEngine) -> PolicyEngine:
    for table in RLS_TABLES:
        engine.enable_rls(table)
    engine.extend(build_policies())
    return engine


_engine: Optional[PolicyEngine] = None


def get_policy_engine() -> PolicyEngine:
    """Return the process-wide engine loaded with the chat policies."""
    global _engine
    if _engine is None:
        _engine = register_chat_policies(PolicyEngine())
    return _engine
