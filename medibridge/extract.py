import json
import logging
import os
import re

from openai import OpenAI

logger = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
GROQ_MODEL = "llama-3.2-90b-vision-preview"

PROMPT = """Analyze this prescription image and extract all medicines mentioned.
For each medicine, provide:
- name: The medicine name
- dosage: The dosage (e.g., "500mg", "10ml")
- frequency: How often to take (e.g., "twice daily", "once at night")
- duration: For how long (e.g., "7 days", "2 weeks")
- quantity: Number of units if mentioned

Return ONLY a valid JSON array in this exact format, with no additional text or markdown:
[{"name": "Medicine Name", "dosage": "dosage", "frequency": "frequency", "duration": "duration", "quantity": number}]

If you cannot read the prescription clearly or no medicines are found, return an empty array: []"""

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


def get_client(api_key, base_url=None):
    return OpenAI(api_key=api_key, base_url=base_url or GROQ_BASE_URL)


def parse_medicines(text):
    """Pull the JSON array of medicines out of a model reply."""
    if not text:
        return []
    match = _JSON_ARRAY.search(text)
    if not match:
        return []
    try:
        items = json.loads(match.group(0))
    except ValueError:
        logger.warning("Could not parse extraction reply: %s", text[:200])
        return []
    medicines = []
    for item in items:
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            continue
        med = {"name": str(item["name"]).strip()}
        for key in ("dosage", "frequency", "duration"):
            if item.get(key):
                med[key] = str(item[key]).strip()
        if isinstance(item.get("quantity"), (int, float)):
            med["quantity"] = int(item["quantity"])
        medicines.append(med)
    return medicines


def extract_medicines(image_base64, api_key=None, model=None, base_url=None):
    api_key = api_key or os.getenv("GROQ_API_KEY")
    if not api_key:
        raise RuntimeError("GROQ_API_KEY not configured")

    data = _DATA_URL_PREFIX.sub("", image_base64)
    logger.info("Calling extraction API with image size: %d KB", len(data) // 1024)
    client = get_client(api_key, base_url)
    response = client.chat.completions.create(
        model=model or GROQ_MODEL,
        messages=[{
            "role": "user",
            "content": [
                {"type": "text", "text": PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{data}"}},
            ],
        }],
        temperature=0.1,
        max_tokens=2048,
    )
    return parse_medicines(response.choices[0].message.content)
