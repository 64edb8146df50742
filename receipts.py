"""
Receipt upload wizard and receipt analysis.

The wizard is linear: answer the need/want + mood questions, then upload
an image. Validation is per field; a failed analysis leaves the wizard on
the upload step so the user can retry by hand.
"""
import json
import logging
import random
import re
from datetime import date

from sqlalchemy.orm import Session

import ai
from models import SpendingLog, Transaction

logger = logging.getLogger(__name__)

MOOD_OPTIONS = ["Happy", "Neutral", "Stressed", "Excited", "Sad", "Anxious"]

QUESTIONS = "questions"
UPLOAD = "upload"
DONE = "done"


class WizardError(ValueError):
    """A user-facing validation message from the receipt wizard."""


class ReceiptWizard:
    def __init__(self):
        self.step = QUESTIONS
        self.need_vs_want = None
        self.mood = None
        self.mood_description = ""
        self.error = None
        self.result = None

    @property
    def questions_complete(self):
        return bool(self.need_vs_want and self.mood and self.mood_description.strip())

    @property
    def mood_label(self):
        if self.mood and self.mood_description.strip():
            return f"{self.mood}: {self.mood_description.strip()}"
        return None

    def _fail(self, message):
        self.error = message
        raise WizardError(message)

    def answer(self, need_vs_want=None, mood=None, mood_description=""):
        self.error = None
        self.need_vs_want = need_vs_want if need_vs_want in ("Need", "Want") else None
        self.mood = mood if mood in MOOD_OPTIONS else None
        self.mood_description = mood_description or ""

        if not self.need_vs_want:
            self._fail("Please select Need or Want")
        if not self.mood:
            self._fail("Please select your mood")
        if not self.mood_description.strip():
            self._fail("Please describe how you were feeling")

        self.step = UPLOAD
        return self

    def upload(self, image, analyze):
        """
        Run `analyze(image)` and enrich the result with the user's answers.
        """
        self.error = None
        if not self.questions_complete:
            self.step = QUESTIONS
            self._fail("Please complete the questions before uploading your receipt.")
        if not image:
            self._fail("No image provided")

        try:
            result = analyze(image)
        except Exception as e:
            logger.warning("Receipt analysis failed: %s", e)
            self._fail(f"Failed to analyze receipt: {e}")

        if not result.get("merchant") or not result.get("amount"):
            self._fail("Failed to analyze receipt: Invalid receipt data received")

        result = dict(result)
        result["needVsWant"] = self.need_vs_want
        result["mood"] = self.mood_label
        self.result = result
        self.step = DONE
        return result


# ---------------------------
# Analysis
# ---------------------------

EXTRACTION_PROMPT = """Analyze this receipt image and extract the following information in JSON format:
{
  "merchant": "store/restaurant name",
  "amount": total_amount_as_number,
  "date": "YYYY-MM-DD format",
  "category": "category like 'Groceries', 'Restaurant', 'Gas', 'Shopping', etc.",
  "items": [{"name": "item name", "price": price_as_number, "quantity": quantity_if_available}],
  "confidence": confidence_score_0_to_1
}

Please be as accurate as possible. If you can't read something clearly, use your best guess but lower the
confidence score accordingly. For the category, choose from common spending categories like: Groceries,
Restaurant, Gas, Shopping, Entertainment, Healthcare, Transportation, Utilities, etc."""

DEMO_RECEIPTS = [
    ("Starbucks", "Restaurant"),
    ("Whole Foods", "Groceries"),
    ("Target", "Shopping"),
    ("CVS Pharmacy", "Healthcare"),
    ("McDonald's", "Fast Food"),
    ("Subway", "Fast Food"),
    ("Chipotle", "Restaurant"),
]


def _today():
    return date.today().isoformat()


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def fallback_receipt():
    return {
        "merchant": "Unknown Merchant",
        "amount": 0,
        "date": _today(),
        "category": "General",
        "items": [],
        "confidence": 0.3,
    }


def demo_receipt(rng=random, model_failed=False):
    """Realistic demo data for when no model is configured or the model call fails."""
    amount = round(rng.random() * 50 + 10, 2)
    merchant, category = rng.choice(DEMO_RECEIPTS[:4] if model_failed else DEMO_RECEIPTS)
    if model_failed:
        return {
            "merchant": merchant + " (Demo)",
            "amount": amount,
            "date": _today(),
            "category": category,
            "items": [{"name": "Demo Item", "price": amount}],
            "confidence": 0.5,
        }
    return {
        "merchant": merchant,
        "amount": amount,
        "date": _today(),
        "category": category,
        "items": [
            {"name": "Item 1", "price": round(amount * 0.6, 2)},
            {"name": "Item 2", "price": round(amount * 0.4, 2)},
        ],
        "confidence": 0.7,
    }


def parse_receipt_content(content: str) -> dict:
    """
    Pull the first {...} block out of the model reply and sanitize it.
    Unparsable replies give the fallback receipt.
    """
    match = re.search(r"\{[\s\S]*\}", content or "")
    try:
        if not match:
            raise ValueError("No JSON found in response")
        parsed = json.loads(match.group(0))
        if not isinstance(parsed, dict):
            raise ValueError("Receipt JSON is not an object")
    except ValueError as e:
        logger.warning("Error parsing receipt response: %s", e)
        parsed = fallback_receipt()

    return {
        "merchant": parsed.get("merchant") or "Unknown Merchant",
        "amount": parsed["amount"] if _is_number(parsed.get("amount")) else 0,
        "date": parsed.get("date") or _today(),
        "category": parsed.get("category") or "General",
        "items": parsed["items"] if isinstance(parsed.get("items"), list) else [],
        "confidence": parsed["confidence"] if _is_number(parsed.get("confidence")) else 0.5,
    }


def analyze_receipt(image_b64: str, rng=random):
    """
    Returns (receipt_data, analyzed) where `analyzed` is True only when the
    model produced the data; demo data is never counted as usage.
    """
    if not ai.is_available():
        logger.warning("OpenAI API key not configured, using demo data")
        return demo_receipt(rng), False

    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": EXTRACTION_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}},
            ],
        }
    ]
    try:
        content = ai.chat_completion(messages, max_tokens=1000, temperature=0.2)
        if not content:
            raise ValueError("No response from OpenAI")
    except Exception as e:
        logger.warning("OpenAI receipt analysis error: %s", e)
        return demo_receipt(rng, model_failed=True), False

    return parse_receipt_content(content), True


# ---------------------------
# Persistence
# ---------------------------

def add_spending_log(session: Session, user_id: int, amount, category, merchant, source, on=None) -> SpendingLog:
    log = SpendingLog(
        user_id=user_id,
        amount=abs(float(amount)),
        date=on or date.today(),
        category=category or "General",
        merchant=merchant or "Unknown Merchant",
        source=source,
    )
    session.add(log)
    return log


def save_receipt(session: Session, user_id: int, data: dict):
    """
    Store an analyzed receipt as a transaction plus its spending log.
    Receipts are always dated today.
    """
    category = data.get("category") or "General"
    categories = category if isinstance(category, list) else [category]
    merchant = data.get("merchant") or "Unknown Merchant"
    amount = abs(float(data.get("amount") or 0))

    txn = Transaction(
        user_id=user_id,
        name=merchant,
        amount=amount,
        date=date.today(),
        category=categories,
        source="receipt",
        confidence=data.get("confidence", 0.8),
        items=data.get("items") or None,
        file_name=data.get("fileName"),
        need_vs_want=data.get("needVsWant") if data.get("needVsWant") in ("Need", "Want") else None,
        mood_at_purchase=data.get("mood") or None,
        ai_insight=data.get("aiInsight") or None,
    )
    session.add(txn)
    log = add_spending_log(session, user_id, amount, categories[0], merchant, "receipt")
    session.commit()
    return txn, log


def create_manual_transaction(session: Session, user_id: int, data: dict):
    name = (data.get("name") or data.get("merchant") or "").strip()
    if not name:
        raise ValueError("Name is required")

    try:
        amount = abs(float(data.get("amount")))
    except (TypeError, ValueError):
        raise ValueError("Invalid amount format")
    if amount == 0:
        raise ValueError("Amount cannot be zero")

    raw_date = data.get("date")
    try:
        on = date.fromisoformat(raw_date) if raw_date else date.today()
    except ValueError:
        raise ValueError("Invalid date format, expected YYYY-MM-DD")

    category = data.get("category") or "General"
    categories = category if isinstance(category, list) else [category]
    need_vs_want = data.get("need_vs_want")
    if need_vs_want not in (None, "Need", "Want"):
        raise ValueError("need_vs_want must be Need or Want")

    txn = Transaction(
        user_id=user_id,
        name=name,
        amount=amount,
        date=on,
        category=categories,
        source="manual",
        need_vs_want=need_vs_want,
        mood_at_purchase=data.get("mood_at_purchase"),
    )
    session.add(txn)
    log = add_spending_log(session, user_id, amount, categories[0], name, "manual", on=on)
    session.commit()
    return txn, log
