import logging
import time

from openai import OpenAI, APIConnectionError, AuthenticationError, RateLimitError

logger = logging.getLogger(__name__)

# ---------------------------
# Client
# ---------------------------

client = None
MODEL = "gpt-4o-mini"

MAX_RETRIES = 3


class AIUnavailable(RuntimeError):
    """No language-model client is configured."""


def configure(api_key, model=None):
    global client, MODEL

    if model:
        MODEL = model

    if not api_key:
        logger.warning("OPENAI_API_KEY not set. AI features will use fallbacks.")
        client = None
        return None

    client = OpenAI(api_key=api_key)
    return client


def is_available():
    return client is not None


# ---------------------------
# Prompts
# ---------------------------

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI financial assistant. Provide clear, actionable advice based on "
    "the user's financial situation. Keep responses concise but informative."
)

MOOD_BUDGETING_SYSTEM_PROMPT = """
You are a friendly, concise AI assistant for a mood-based budgeting app. Your purpose is to help
users understand the relationship between their emotions and spending habits, provide personalized
financial insights, and offer supportive guidance without being judgmental.

- Answer the user's direct question first, elaborate only if necessary
- Keep responses brief (1-3 sentences unless detailed analysis is requested)
- Personalize using the spending and mood data you are given
- Frame advice positively; be empathetic about emotional spending
- Keep financial terms simple
"""


# ---------------------------
# Calls
# ---------------------------

def is_quota_error(exc):
    message = str(getattr(exc, "message", "") or exc)
    return getattr(exc, "type", None) == "insufficient_quota" or "quota" in message.lower()


def chat_completion(messages, max_tokens=300, temperature=0.8, max_retries=MAX_RETRIES, sleep=time.sleep):
    """
    Send `messages` to the chat model and return the first choice's text.

    Quota errors and connection errors are retried with exponential backoff
    (1s, 2s, 4s ...). Everything else propagates to the caller.
    """
    if client is None:
        raise AIUnavailable("AI assistant is not configured (missing OPENAI_API_KEY).")

    for attempt in range(max_retries):
        try:
            response = client.chat.completions.create(
                model=MODEL,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except RateLimitError as exc:
            if attempt < max_retries - 1 and is_quota_error(exc):
                delay = 2 ** attempt
                logger.info("Quota error on attempt %s, retrying in %ss", attempt + 1, delay)
                sleep(delay)
                continue
            raise
        except APIConnectionError:
            logger.warning("Request attempt %s failed", attempt + 1, exc_info=True)
            if attempt == max_retries - 1:
                raise
            sleep(2 ** attempt)
            continue

        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip()

    raise RuntimeError("Max retries exceeded")


def describe_api_error(exc):
    """
    Map a model API error to (http_status, message, suggestions).
    """
    if isinstance(exc, RateLimitError):
        if is_quota_error(exc):
            return 429, "Quota exceeded: the OpenAI account has no remaining credit.", [
                "Check billing at https://platform.openai.com/account/billing",
                "Try again later; payment activation can take a few hours",
            ]
        return 429, "Rate limit: too many requests per minute. Please wait and try again.", [
            "Wait 60 seconds before making another request",
        ]
    if isinstance(exc, AuthenticationError):
        return 401, "Invalid API key. Please check your OpenAI configuration.", [
            "Verify your API key is correct",
            "Check that the key hasn't expired",
        ]
    if isinstance(exc, AIUnavailable):
        return 500, str(exc), []
    return 500, str(getattr(exc, "message", "") or exc) or "Unknown error", []
