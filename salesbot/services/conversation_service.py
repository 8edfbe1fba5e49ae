from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from salesbot.services.funnel_stages import FunnelStage, parse_stage
from salesbot.services.memory_store import ConversationStore, HistoryMessage, utcnow

MAX_HISTORY_TOKENS = 4000
RECENT_HISTORY_LIMIT = 30
STAGE_KEY = "current_stage"
# Key used for single-valued categories such as active_upsell.
CURRENT_KEY = "current"


class MemoryCategory:
    FUNNEL_STAGE = "funnel_stage"
    FUNNEL_ANALYTICS = "funnel_analytics"
    PURCHASED_PRODUCT = "purchased_product"
    PURCHASE_HISTORY = "purchase_history"
    LAST_INTERACTION = "last_interaction"
    ACTIVE_UPSELL = "active_upsell"
    ACTIVE_DOWNSELL = "active_downsell"
    REJECTED_UPSELL = "rejected_upsell"
    OFFER_RESPONSE = "offer_response"
    IDENTIFIED_PAIN = "identified_pain"
    CONTACT_INFO = "contact_info"
    SALES_ACTIONS = "sales_actions"
    SUPPORT_REQUESTS = "support_requests"


@dataclass
class ChatState:
    contact_key: str
    contact_name: Optional[str] = None
    messages: list[HistoryMessage] = field(default_factory=list)
    current_stage: Optional[FunnelStage] = None

    def recent_user_texts(self, window: int = 5) -> list[str]:
        """Lowercased user messages among the last ``window`` messages."""
        return [m.content.lower() for m in self.messages[-window:] if m.role == "user"]

    def last_user_message(self) -> Optional[HistoryMessage]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None


async def get_persisted_stage(store: ConversationStore, contact_key: str) -> Optional[FunnelStage]:
    entry = await store.get_latest(contact_key, MemoryCategory.FUNNEL_STAGE)
    return parse_stage(entry.value) if entry and entry.value else None


async def load_chat_state(store: ConversationStore, contact_key: str, limit: int = RECENT_HISTORY_LIMIT) -> ChatState:
    """Load recent history, the stored contact name and the persisted stage."""
    return ChatState(
        contact_key=contact_key,
        contact_name=await store.get_contact_name(contact_key),
        messages=await store.get_recent(contact_key, limit),
        current_stage=await get_persisted_stage(store, contact_key),
    )


async def remember_contact_name(store: ConversationStore, state: ChatState, name: Optional[str]) -> None:
    name = (name or "").strip()
    if not name or name == state.contact_name:
        return
    await store.set_contact_name(state.contact_key, name)
    state.contact_name = name


async def record_message(
    store: ConversationStore,
    state: ChatState,
    role: str,
    content: str,
    metadata: Optional[dict] = None,
    clock: Callable[[], datetime] = utcnow,
) -> HistoryMessage:
    """Persist a message and append it to the in-flight state."""
    message = HistoryMessage(role=role, content=content, timestamp=clock(), metadata=metadata or {})
    await store.append(state.contact_key, message)
    state.messages.append(message)
    return message


def estimate_tokens(text: str) -> int:
    return (len(text or "") + 3) // 4


def trim_history(system_prompt: str, messages: list[HistoryMessage], max_tokens: int = MAX_HISTORY_TOKENS) -> list[dict]:
    """Build the model message list: system prompt plus the newest history that fits the token budget."""
    budget = max_tokens - estimate_tokens(system_prompt)
    selected: list[HistoryMessage] = []
    for message in reversed(messages):
        if message.role == "system":
            continue
        cost = estimate_tokens(message.content)
        if cost > budget:
            break
        selected.append(message)
        budget -= cost
    selected.reverse()
    return [{"role": "system", "content": system_prompt}] + [
        {"role": m.role, "content": m.content} for m in selected
    ]
