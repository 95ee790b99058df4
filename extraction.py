"""Question extraction from scanned paper pages through hosted LLMs.

Each provider is called over plain HTTP. Keys come from comma separated
environment variables and are rotated when a provider answers with a
rate-limit or overload status.
"""
import json
import logging
import os
import re
import time

import requests


log = logging.getLogger(__name__)

GEMINI_MODELS = [
    "gemini-1.5-flash",
    "gemini-flash-latest",
    "gemini-1.5-pro",
    "gemini-pro-latest",
    "gemini-flash-lite-latest",
    "gemini-2.0-flash",
    "gemini-2.0-pro-exp-02-05",
]
DEFAULT_GEMINI_MODEL = "gemini-flash-latest"

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"

REQUEST_TIMEOUT = 120

PROVIDERS = {
    "gemini": {
        "label": "Gemini",
        "env": "GEMINI_API_KEY",
        "retry_statuses": (429, 503),
        "backoff": (5.0, 1.0),   # (wrapped to first key, otherwise)
        "pacing": 2.0,
    },
    "openai": {
        "label": "OpenAI",
        "env": "OPENAI_API_KEY",
        "retry_statuses": (429, 500, 503),
        "backoff": (2.0, 0.5),
        "pacing": 1.0,
    },
    "groq": {
        "label": "Groq",
        "env": "GROQ_API_KEY",
        "retry_statuses": (429, 503),
        "backoff": (1.0, 1.0),
        "pacing": 0.5,
    },
}

USER_TURN = "Analyze this image and extract questions according to the system instructions."

BASE_PROMPT = """
You digitise printed exam papers (physics, chemistry, mathematics and general subjects).
Read the attached page and extract every question on it.

Formatting:
1. Write all mathematical, physical and chemical notation as MathJax.
   Inline expressions use \\( ... \\), standalone equations use \\[ ... \\].
2. Chemical formulas and units carry real sub/superscripts: H_2O, SO_4^{2-}, m/s^2, 10^{-6}.

Classification:
- "mcq": question with lettered options. Drop the question number, list the options,
  and give the correct option letter as correctAnswer.
- "fill_blank": one word or short phrase answer.
- "short_answer": one or two sentences.
- "long_answer": a paragraph or more.
For anything that is not an mcq, options is [] and correctAnswer holds the expected
answer or the key points of a model answer.

Also:
- explanation: step by step reasoning.
- tags: two or three topic names.
- marks: the printed marks when present ("[2 marks]", "(4)"), otherwise 1.
- A reading passage shared by several questions goes into "paragraphs" with an id such
  as "p1"; each question that depends on it sets "paragraphId". Never emit the passage as
  a question of its own.
- Exam-level instructions printed on the page go into "instructions".

Reply with JSON only:
{
  "instructions": ["..."],
  "paragraphs": [{"id": "p1", "text": "..."}],
  "questions": [
    {
      "type": "mcq",
      "text": "...",
      "options": ["...", "...", "...", "..."],
      "correctAnswer": "A",
      "explanation": "...",
      "tags": ["..."],
      "marks": 1,
      "paragraphId": "p1"
    }
  ]
}
"""


class ExtractionError(Exception):
    """A page could not be turned into questions."""

class RateLimitError(ExtractionError):
    """Every key of a provider was rate limited or overloaded."""

class ProviderHTTPError(ExtractionError):
    def __init__(self, provider, status, message):
        super().__init__(f"{PROVIDERS[provider]['label']} Error {status}: {message}")
        self.provider = provider
        self.status = status


def load_keys(env_value):
    return [k.strip() for k in (env_value or "").split(",") if k.strip()]

class KeyPool:
    """Round-robin cursor over one provider's API keys."""

    def __init__(self, keys, index=0):
        self.keys = list(keys)
        self.index = index % len(self.keys) if self.keys else 0

    def __len__(self):
        return len(self.keys)

    def current(self):
        if not self.keys:
            raise ExtractionError("no API keys configured")
        return self.keys[self.index]

    def advance(self):
        """Move to the next key; True when the cursor wrapped back to the first key."""
        if not self.keys:
            return False
        self.index = (self.index + 1) % len(self.keys)
        return self.index == 0

def resolve_provider(model):
    model = (model or "").strip()
    if model in GEMINI_MODELS:
        return "gemini", model
    if model.startswith("gpt-"):
        return "openai", model
    if model.startswith(("llama-", "mixtral-", "meta-llama/")):
        return "groq", model
    return "gemini", DEFAULT_GEMINI_MODEL

def provider_keys(provider, environ=None):
    environ = os.environ if environ is None else environ
    return load_keys(environ.get(PROVIDERS[provider]["env"]))

def build_prompt(custom_prompt=None):
    custom_prompt = (custom_prompt or "").strip()
    if custom_prompt:
        return f"{BASE_PROMPT}\n\nADDITIONAL INSTRUCTIONS:\n{custom_prompt}"
    return BASE_PROMPT

# --------------------------------------------------------------------
# Provider calls
# --------------------------------------------------------------------
def _strip_data_url(image):
    return image.split(",", 1)[1] if "," in image else image

def _as_data_url(image):
    return image if image.startswith("data:") else f"data:image/jpeg;base64,{image}"

def _error_message(resp):
    try:
        body = resp.json()
    except ValueError:
        return resp.reason or "request failed"
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return err.get("message") or resp.reason
    return err or resp.reason or "request failed"

def _call_gemini(model, prompt, image, key):
    payload = {
        "contents": [{
            "parts": [
                {"text": prompt},
                {"inline_data": {"mime_type": "image/jpeg", "data": _strip_data_url(image)}},
            ]
        }]
    }
    resp = requests.post(GEMINI_URL.format(model=model), params={"key": key},
                         json=payload, timeout=REQUEST_TIMEOUT)
    if resp.status_code != 200:
        raise ProviderHTTPError("gemini", resp.status_code, _error_message(resp))
    data = resp.json()
    parts = (data.get("candidates") or [{}])[0].get("content", {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts)

def _call_chat(provider, url, model, prompt, image, key):
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": prompt},
            {"role": "user", "content": [
                {"type": "text", "text": USER_TURN},
                {"type": "image_url", "image_url": {"url": _as_data_url(image)}},
            ]},
        ],
        "max_tokens": 4000,
    }
    headers = {"Authorization": f"Bearer {key}"}
    resp = requests.post(url, json=payload, headers=headers, timeout=REQUEST_TIMEOUT)
    if resp.status_code != 200:
        raise ProviderHTTPError(provider, resp.status_code, _error_message(resp))
    return resp.json()["choices"][0]["message"]["content"]

def _call_provider(provider, model, prompt, image, key):
    if provider == "gemini":
        return _call_gemini(model, prompt, image, key)
    if provider == "openai":
        return _call_chat(provider, OPENAI_URL, model, prompt, image, key)
    return _call_chat(provider, GROQ_URL, model, prompt, image, key)

def generate(provider, model, prompt, image, pool, pacing=True, sleep=time.sleep):
    """Call the provider with key rotation. The pool cursor is left on the key that worked."""
    cfg = PROVIDERS[provider]
    max_attempts = 2 * len(pool)
    attempts = 0
    while attempts < max_attempts:
        attempts += 1
        try:
            text = _call_provider(provider, model, prompt, image, pool.current())
        except ProviderHTTPError as exc:
            log.warning("%s attempt %d failed with key #%d: %s", cfg["label"], attempts, pool.index, exc)
            if exc.status not in cfg["retry_statuses"]:
                raise
            wrapped = pool.advance()
            sleep(cfg["backoff"][0] if wrapped else cfg["backoff"][1])
            continue
        if pacing:
            sleep(cfg["pacing"])
        return text
    raise RateLimitError(f"{cfg['label']}: all keys exhausted or max retries reached.")

# --------------------------------------------------------------------
# Response cleanup
# --------------------------------------------------------------------
_ESCAPE_RE = re.compile(r'(\\["\\/bfnrtu]|\\u[0-9a-fA-F]{4})|(\\.)', re.S)

def _fix_escapes(text):
    def repl(m):
        if m.group(1):
            return m.group(1)
        return "\\\\" + m.group(2)[1:]
    return _ESCAPE_RE.sub(repl, text)

def repair_truncated_json(text):
    """Best effort close of a JSON document cut off mid-stream.

    Walks the text tracking open strings, arrays and objects, drops a dangling
    partial member, then appends the missing closers in order.
    """
    stack = []
    in_string = False
    escaped = False
    last_safe = 0  # end of the last complete value inside a container
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            if stack:
                stack.pop()
            last_safe = i + 1
        elif ch == ",":
            last_safe = i

    if not stack and not in_string:
        return text

    body = text
    if in_string:
        body += '"'
    candidate = body + "".join("}" if c == "{" else "]" for c in reversed(stack))
    try:
        json.loads(candidate)
        return candidate
    except ValueError:
        pass

    # drop the partial member after the last complete value and close again
    body = text[:last_safe].rstrip().rstrip(",")
    stack = []
    in_string = False
    escaped = False
    for ch in body:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()
    return body + "".join("}" if c == "{" else "]" for c in reversed(stack))

def clean_model_json(text):
    """Parse the JSON object out of a model reply. Raises ExtractionError."""
    cleaned = (text or "").replace("```json", "").replace("```", "").strip()
    start = cleaned.find("{")
    if start == -1:
        raise ExtractionError("No JSON object found in response")
    end = cleaned.rfind("}")
    cleaned = cleaned[start:end + 1] if end > start else cleaned[start:]
    cleaned = _fix_escapes(cleaned)
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    # the reply may have been cut at max_tokens: work from the untrimmed tail
    tail = _fix_escapes((text or "").replace("```json", "").replace("```", "").strip()[start:])
    try:
        return json.loads(repair_truncated_json(tail))
    except ValueError as exc:
        raise ExtractionError(f"Unparseable model response: {exc}") from exc

def normalize_correct_answer(value):
    if value is None:
        return ""
    if isinstance(value, list):
        value = ",".join(str(v) for v in value)
    return re.sub(r"option\s?", "", str(value), count=1, flags=re.I).strip().upper()

# --------------------------------------------------------------------
# Extraction
# --------------------------------------------------------------------
def extract_questions(images, model=None, custom_prompt=None, environ=None, pacing=True,
                      sleep=time.sleep, clock=time.time):
    """Run every page image through the chosen model.

    Returns {"questions", "instructions", "paragraphs", "failedPages",
    "rateLimitedPages", "provider", "model"}. Raises ExtractionError when the
    provider has no keys and ValueError when there are no images.
    """
    provider, model_name = resolve_provider(model)
    label = PROVIDERS[provider]["label"]
    keys = provider_keys(provider, environ)
    log.info("extracting %d page(s) with %s/%s using %d key(s)", len(images or []), provider, model_name, len(keys))
    if not keys:
        raise ExtractionError(f"{label} API Key missing.")
    if not images:
        raise ValueError("No images provided.")

    prompt = build_prompt(custom_prompt)
    pool = KeyPool(keys)
    questions, instructions, paragraphs = [], [], []
    failed, rate_limited = [], []

    for page, image in enumerate(images, start=1):
        try:
            text = generate(provider, model_name, prompt, image, pool, pacing=pacing, sleep=sleep)
            parsed = clean_model_json(text)
        except RateLimitError as exc:
            log.error("page %d skipped, %s", page, exc)
            failed.append(page)
            rate_limited.append(page)
            continue
        except (ExtractionError, requests.RequestException, KeyError, IndexError, ValueError) as exc:
            log.error("error processing page %d with %s: %s", page, provider, exc)
            failed.append(page)
            continue

        stamp = int(clock() * 1000)
        for idx, q in enumerate(parsed.get("questions") or [], start=1):
            if not isinstance(q, dict):
                continue
            item = dict(q)
            item["id"] = f"page{page}_q{idx}_{stamp}"
            item["page"] = page
            item["correctAnswer"] = normalize_correct_answer(q.get("correctAnswer"))
            questions.append(item)
        instructions.extend(parsed.get("instructions") or [])
        paragraphs.extend(parsed.get("paragraphs") or [])

    return {
        "questions": questions,
        "instructions": instructions,
        "paragraphs": paragraphs,
        "failedPages": failed,
        "rateLimitedPages": rate_limited,
        "provider": provider,
        "model": model_name,
    }
