import os
import json
import logging
from dataclasses import dataclass
import google.generativeai as genai
from flask import current_app

# Configure API key
genai.configure(api_key=os.environ.get("GEMINI_API_KEY", "default_key"))

# Load Gemini model
model = genai.GenerativeModel(os.environ.get("GEMINI_MODEL", "gemini-2.5-flash"))

DEFAULT_PROMPT = """Verify if this photo matches the task: "{description}".

Check:
1. Does the content match what was requested?
2. Is it clearly visible and not blurry?
3. Is it appropriate (no explicit content)?
4. Does it look authentic (not a screenshot or reused)?

Be strict but fair. Score confidence 0.0 to 1.0 where 1.0 is a perfect,
clear, authentic match and below 0.5 does not meet the requirements."""

RESPONSE_FORMAT = """
Respond with JSON only: {"verified": true|false, "confidence": <0.0-1.0>, "reason": "<short explanation>"}"""


class PhotoVerificationError(Exception):
    pass


@dataclass(frozen=True)
class PhotoVerdict:
    verified: bool
    confidence: float
    reason: str


def build_prompt(task):
    prompt = task.verification_prompt or DEFAULT_PROMPT.format(description=task.description or task.title)
    return prompt + RESPONSE_FORMAT


def parse_verdict(text):
    try:
        data = json.loads(text)
        return PhotoVerdict(
            verified=bool(data['verified']),
            confidence=float(data['confidence']),
            reason=str(data.get('reason', '')),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise PhotoVerificationError(f"Unparseable verification result: {text!r}") from e


# Verification function
def verify_task_photo(photo_path, task, mime_type="image/jpeg"):
    with open(photo_path, "rb") as img:
        image_bytes = img.read()

    try:
        response = model.generate_content(
            [build_prompt(task), {"mime_type": mime_type, "data": image_bytes}],
            generation_config={"response_mime_type": "application/json"},
            request_options={"timeout": current_app.config["EXTERNAL_TIMEOUT_SECONDS"]},
        )
        text = response.text
    except Exception as e:
        logging.error(f"Gemini request failed: {e}")
        raise PhotoVerificationError(str(e)) from e

    return parse_verdict(text)
