import logging
from datetime import date

from sqlalchemy.orm import Session

import ai
from models import ChatMessage, ChatSession, Transaction, utcnow

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")


# ---------------------------
# Sessions + messages
# ---------------------------

def generate_chat_title(first_message: str) -> str:
    if not first_message or not first_message.strip():
        return "New Chat"

    title = first_message.strip()
    if len(title) <= 50:
        return title
    return title[:47] + "..."


def create_session(session: Session, user_id: int, title: str = "New Chat") -> ChatSession:
    chat = ChatSession(user_id=user_id, title=title)
    session.add(chat)
    session.commit()
    return chat


def get_session(session: Session, user_id: int, session_id: int):
    return session.query(ChatSession).filter_by(id=session_id, user_id=user_id).first()


def list_sessions(session: Session, user_id: int):
    return (
        session.query(ChatSession)
        .filter(ChatSession.user_id == user_id)
        .order_by(ChatSession.updated_at.desc(), ChatSession.id.desc())
        .all()
    )


def add_message(session: Session, chat: ChatSession, role: str, content: str, metadata=None) -> ChatMessage:
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}")

    message = ChatMessage(
        session_id=chat.id,
        user_id=chat.user_id,
        role=role,
        content=content,
        meta=metadata or {},
    )
    chat.updated_at = utcnow()
    session.add(message)
    session.commit()
    return message


def get_messages(session: Session, chat: ChatSession):
    return (
        session.query(ChatMessage)
        .filter(ChatMessage.session_id == chat.id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .all()
    )


def rename_session(session: Session, chat: ChatSession, title: str):
    chat.title = title.strip() or "New Chat"
    chat.updated_at = utcnow()
    session.commit()
    return chat


def delete_session(session: Session, chat: ChatSession):
    session.delete(chat)
    session.commit()


def record_exchange(session: Session, user_id: int, session_id, prompt: str, answer: str) -> ChatSession:
    """
    Store a user prompt and the assistant's answer. The session is created
    on the first message when `session_id` is None.
    """
    chat = None
    if session_id is not None:
        chat = get_session(session, user_id, session_id)
        if chat is None:
            raise LookupError("Chat session not found")
    if chat is None:
        chat = create_session(session, user_id, generate_chat_title(prompt))

    add_message(session, chat, "user", prompt)
    add_message(session, chat, "assistant", answer)
    return chat


# ---------------------------
# Prompt context
# ---------------------------

def _describe(t: Transaction, with_date=False) -> str:
    line = f"- {t.name}: ${abs(t.amount):g} ({t.need_vs_want or 'unclassified'})"
    if with_date:
        line = f"- {t.date.isoformat()}: {t.name} - ${abs(t.amount):g} ({t.need_vs_want or 'unclassified'})"
    if t.mood_at_purchase:
        line += f" [Mood: {t.mood_at_purchase}]"
    return line


def build_transaction_context(session: Session, user_id: int, today=None) -> str:
    today = today or date.today()
    txns = (
        session.query(Transaction)
        .filter(Transaction.user_id == user_id)
        .order_by(Transaction.date.desc(), Transaction.id.desc())
        .limit(20)
        .all()
    )

    if not txns:
        return "USER TRANSACTION DATA: No transactions found."

    todays = [t for t in txns if t.date == today]
    lines = ["USER'S RECENT TRANSACTION DATA:", "", f"Today's Transactions ({today.isoformat()}):"]
    lines += [_describe(t) for t in todays] or ["No transactions today"]
    lines += ["", "Recent Transactions (last 10):"]
    lines += [_describe(t, with_date=True) for t in txns[:10]]
    lines += ["", f"Total transactions available: {len(txns)}"]
    return "\n".join(lines)


def ask_ai(session: Session, user_id: int, prompt: str, system_prompt: str = None) -> str:
    try:
        context = build_transaction_context(session, user_id)
    except Exception:
        logger.warning("Could not fetch transaction data for user %s", user_id, exc_info=True)
        context = "USER TRANSACTION DATA: Unable to fetch transaction data."

    messages = [
        {"role": "system", "content": system_prompt or ai.DEFAULT_SYSTEM_PROMPT},
        {"role": "user", "content": f"Context: {context}\n\nUser Question: {prompt}"},
    ]
    return ai.chat_completion(messages, max_tokens=300, temperature=0.8)


# ---------------------------
# Typing reveal
# ---------------------------

def typing_frames(text: str, step: int = 1):
    """
    Yield growing prefixes of an already complete answer, `step` characters
    at a time. The last frame is always the full text.
    """
    if step < 1:
        raise ValueError("step must be >= 1")
    if not text:
        yield ""
        return
    for end in range(step, len(text), step):
        yield text[:end]
    yield text
