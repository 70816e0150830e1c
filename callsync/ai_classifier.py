"""AI classification of SMS bodies and call transcripts.

Runs as deferred follow-up work after an event is first stored, never on
the webhook request path. Uses GPT-4o-mini with a JSON response format.
"""

import json
import logging
import os

from openai import OpenAI

logger = logging.getLogger(__name__)

CATEGORIES = ["review", "booking_request", "question", "general"]

SMS_PROMPT = (
    "You are triaging text messages exchanged between a small business and "
    "its customers. Classify the message as one of:\n\n"
    "review - The customer is giving feedback about a service they received, "
    "positive or negative.\n\n"
    "booking_request - The customer wants to book, reschedule or cancel an "
    "appointment or job.\n\n"
    "question - The customer is asking for information (prices, opening "
    "hours, availability) without asking to book.\n\n"
    "general - Anything else, including confirmations, automated replies "
    "and spam.\n\n"
    "Also rate the sentiment as positive, neutral or negative, and give a "
    "confidence between 0 and 1."
)

TRANSCRIPT_PROMPT = (
    "You are analysing the transcript of a phone call handled by a business "
    "or its AI receptionist. Classify the call with the same categories used "
    "for text messages:\n\n"
    "review - The caller is giving feedback about a service they received.\n\n"
    "booking_request - The caller wants to book, reschedule or cancel an "
    "appointment or job.\n\n"
    "question - The caller is asking for information without booking.\n\n"
    "general - Anything else, including voicemails, wrong numbers and spam.\n\n"
    "Also rate the caller's sentiment as positive, neutral or negative, give "
    "a confidence between 0 and 1 and a one-sentence summary of the call."
)

CLASSIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "category": {"type": "string", "enum": CATEGORIES},
        "sentiment": {"type": "string", "enum": ["positive", "neutral", "negative"]},
        "confidence": {"type": "number"},
        "summary": {"type": "string"},
    },
    "required": ["category", "sentiment"],
}


def _get_openai_client():
    """Create an OpenAI client using Flask config or env var."""
    try:
        from flask import current_app
        api_key = current_app.config.get("OPENAI_API_KEY")
    except RuntimeError:
        api_key = None

    if not api_key:
        api_key = os.environ.get("OPENAI_API_KEY")

    if not api_key:
        raise ValueError("OPENAI_API_KEY not configured")

    return OpenAI(api_key=api_key)


def _classify(prompt, label, text):
    client = _get_openai_client()

    try:
        response = client.chat.completions.create(
            model="gpt-4o-mini",
            messages=[
                {
                    "role": "system",
                    "content": (
                        f"{prompt}\n\n"
                        "Respond with a JSON object matching this schema:\n"
                        f"{json.dumps(CLASSIFICATION_SCHEMA, indent=2)}"
                    ),
                },
                {"role": "user", "content": f"Here is the {label}:\n\n{text}"},
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
        )

        result = json.loads(response.choices[0].message.content)

    except Exception:
        logger.exception("Failed to classify %s", label)
        raise

    category = result.get("category")
    if category not in CATEGORIES:
        category = "general"
    return {
        "category": category,
        "sentiment": result.get("sentiment"),
        "confidence": result.get("confidence"),
        "summary": result.get("summary"),
    }


def classify_sms(body):
    """Classify an SMS body.

    Returns:
        Dict with category, sentiment, confidence, summary.
    """
    return _classify(SMS_PROMPT, "text message", body)


def classify_transcript(transcript_text):
    """Classify a call transcript reported by an AI-agent provider."""
    return _classify(TRANSCRIPT_PROMPT, "call transcript", transcript_text)
