"""
Message formatting for TopicGate

Text templates used when mirroring traffic between the two networks.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from src.models.message import CallEvent, ConversationClass, numeric_handle


SPOILER_PREFIX = "🫥 "
STICKER_FALLBACK_CAPTION = "Sticker"
OUTBOUND_STICKER_FALLBACK_CAPTION = "Sticker (fallback)"
PROFILE_PHOTO_CAPTION = "📸 Profile Picture"
MISSING_STATUS_TEXT = "❌ Cannot find original status message to reply to"

REACTION_SUCCESS = "👍"
REACTION_STATUS_REPLY = "✅"
REACTION_FAILURE = "❌"

# (title, accent colour) for conversation classes with a fixed thread
SYSTEM_THREADS: Dict[ConversationClass, Tuple[str, int]] = {
    ConversationClass.BROADCAST: ("📊 Status Updates", 0xFF6B35),
    ConversationClass.CALL_LOG: ("📞 Call Logs", 0xFF4757),
}

GROUP_COLOR = 0x6FB9F0
DIRECT_COLOR = 0x7ABA3C
DEFAULT_GROUP_TITLE = "Group Chat"

_DATE_FORMAT = "%Y-%m-%d"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def attribute(name: str, text: str) -> str:
    """Prefix group traffic with its author"""
    return f"👤 {name}:\n{text}" if text else f"👤 {name}"


def status_text(name: str, text: str) -> str:
    return f"📱 Status from {name}\n\n{text}"


def spoiler(text: str) -> str:
    return f"{SPOILER_PREFIX}{text}"


def opening_message(conversation_class: ConversationClass, conversation_id: str, title: str,
                    handle_name: Optional[str] = None,
                    group_metadata: Optional[Dict[str, Any]] = None) -> str:
    """Pinned message posted once when a thread is created"""
    if conversation_class is ConversationClass.BROADCAST:
        return "📊 **Status Updates**\n\n💬 Status posts from your contacts will appear here"

    if conversation_class is ConversationClass.CALL_LOG:
        return "📞 **Call Logs**\n\n💬 Incoming call notifications will appear here"

    if conversation_class is ConversationClass.GROUP:
        if not group_metadata:
            return "🏷️ **Group Chat**\n\n💬 Messages from this group will appear here"

        lines = [
            "🏷️ **Group Information**",
            "",
            f"📝 **Name:** {group_metadata.get('subject') or title}",
            f"👥 **Participants:** {len(group_metadata.get('participants') or [])}",
            f"🆔 **Group ID:** `{conversation_id}`",
        ]
        created = group_metadata.get('creation')
        if created:
            lines.append(f"📅 **Created:** {datetime.fromtimestamp(created).strftime(_DATE_FORMAT)}")
        lines += ["", "💬 Messages from this group will appear here"]
        return "\n".join(lines)

    phone = numeric_handle(conversation_id)
    return (
        f"👤 **Contact Information**\n\n"
        f"📝 **Name:** {title}\n"
        f"📱 **Phone:** +{phone}\n"
        f"🖐️ **Handle:** {handle_name or 'Unknown'}\n"
        f"🆔 **Source ID:** `{conversation_id}`\n"
        f"📅 **First Contact:** {datetime.now().strftime(_DATE_FORMAT)}\n\n"
        f"💬 Messages with this contact will appear here"
    )


def call_notification(call: CallEvent, caller_name: str) -> str:
    status = (call.status or "incoming").capitalize()
    kind = "Video Call" if call.is_video else "Call"
    return (
        f"📞 **{status} {kind}**\n\n"
        f"👤 **From:** {caller_name}\n"
        f"📱 **Number:** +{numeric_handle(call.caller_id)}\n"
        f"⏰ **Time:** {call.timestamp.strftime(_TIME_FORMAT)}\n"
        f"🆔 **Call ID:** {call.call_id}"
    )


def contact_card(display_name: str, phone_number: str, sender: Optional[str] = None) -> str:
    header = f"👤 {sender} shared contact:" if sender else "📇 Contact:"
    return f"{header} {display_name}\n📱 {phone_number or 'unknown'}"


def location_attribution(sender: str, name: Optional[str] = None) -> str:
    if name:
        return f"👤 {sender} shared a location: {name}"
    return f"👤 {sender} shared a location"


def build_vcard(display_name: str, phone_number: str) -> str:
    """vCard 3.0 for a contact shared from the forum"""
    first, _, last = display_name.strip().partition(" ")
    display = display_name.strip() or phone_number
    return (
        "BEGIN:VCARD\n"
        "VERSION:3.0\n"
        f"N:{last};{first};;;\n"
        f"FN:{display}\n"
        f"TEL;TYPE=CELL:{phone_number}\n"
        "END:VCARD"
    )


def operator_notice(title: str, message: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now()
    return f"🤖 *{title}*\n\n{message}\n\n⏰ {when.strftime(_TIME_FORMAT)}"


def rate_limit_notice(hint: str) -> str:
    return f"⏳ Too many requests. Try again in {hint}."


def connected_notice(mapping_count: int, contact_count: int) -> str:
    return (
        "📱 Source: Connected\n"
        "🔗 Forum Bridge: Active\n"
        f"🧵 Threads: {mapping_count} mapped\n"
        f"📞 Contacts: {contact_count} synced\n"
        "🚀 Ready to bridge messages!"
    )
