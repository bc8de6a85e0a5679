import os
import logging
import re
from typing import Optional

import requests

from errors import (
  BuilderError,
  CredentialInvalidError,
  CredentialMissingError,
  MalformedResponseError,
  NetworkError,
  QuotaExceededError,
  ValidationFailure,
)

logger = logging.getLogger("ai-client")

# Use Gemini key from environment if present; DO NOT hardcode in repo
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
if not GEMINI_API_KEY:
  logger.warning("GEMINI_API_KEY not set. AI calls will fail unless provided at runtime.")

GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_BASE_URL = os.environ.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/models")

WEBSITE_GENERATION_CONFIG = {"temperature": 0.7, "topK": 40, "topP": 0.95, "maxOutputTokens": 8192}
EXPLANATION_GENERATION_CONFIG = {"temperature": 0.3, "topK": 40, "topP": 0.95, "maxOutputTokens": 4096}

WEBSITE_SYSTEM_PROMPT = """You are an expert web developer who creates complete, functional websites.
Based on the user's request, generate complete HTML, CSS, and JavaScript code for a modern, responsive website.

IMPORTANT: Always provide ONLY the complete HTML code with embedded CSS and JavaScript.

Requirements:
1. Complete HTML structure with proper DOCTYPE and meta tags
2. Embedded CSS with modern styling (flexbox, grid, animations)
3. JavaScript functionality as needed
4. Fully responsive design that works on all devices
5. Modern UI/UX with smooth transitions and micro-interactions
6. Clean, semantic, and accessible code
7. SEO friendly structure with proper meta tags
8. Proper error handling in JavaScript
9. CSS custom properties for theming
10. Cross-browser compatibility

Format your response as a complete HTML file with embedded CSS and JS.

User Request: {request}"""

EXPLANATION_PROMPTS = {
  "overview": """You are a code explanation expert. Analyze the provided HTML/CSS/JavaScript code and provide a comprehensive overview.

Please provide:
1. What this code does (main purpose and functionality)
2. Key technologies and techniques used
3. Overall structure and architecture
4. Main features and components
5. User experience highlights

Format your response in clear, beginner-friendly language with proper headings and bullet points.

Code to analyze:
{code}""",
  "breakdown": """You are a code explanation expert. Provide a detailed line-by-line breakdown of the provided code.

Please analyze and explain:
1. HTML Structure - What each section does
2. CSS Styling - How the visual design is achieved
3. JavaScript Functionality - How interactive features work
4. Key code blocks and their purposes
5. Important functions and their roles

Format as sections with clear explanations for each part.

Code to analyze:
{code}""",
  "concepts": """You are a web development educator. Identify and explain the key programming concepts used in this code.

Please identify and explain:
1. HTML Concepts (semantic elements, accessibility, SEO)
2. CSS Concepts (flexbox, grid, animations, responsive design)
3. JavaScript Concepts (DOM manipulation, event handling, etc.)
4. Design Patterns and Best Practices
5. Modern Web Development Techniques

For each concept, provide what it is, why it's used here, and related concepts.

Code to analyze:
{code}""",
  "practices": """You are a senior web developer reviewing code quality. Analyze the best practices followed in this code.

Please evaluate and explain:
1. Code Organization and Structure
2. Performance Optimizations
3. Accessibility Implementation
4. SEO Best Practices
5. Security Considerations
6. Browser Compatibility
7. Maintainability and Scalability

For each practice, explain what was done well, why it matters, and potential improvements.

Code to analyze:
{code}""",
}

EXPLANATION_TYPES = tuple(EXPLANATION_PROMPTS)


def clean_code_response(text: str) -> str:
  """Strip markdown fences and make sure an HTML document starts with a DOCTYPE."""
  cleaned = re.sub(r"```html\s*", "", text or "")
  cleaned = re.sub(r"```\s*$", "", cleaned)
  cleaned = cleaned.replace("```", "").strip()
  lowered = cleaned.lower()
  if not lowered.startswith("<!doctype") and "<html" in lowered:
    cleaned = "<!DOCTYPE html>\n" + cleaned
  return cleaned


def format_explanation(text: str) -> str:
  """Turn the model's markdown-ish answer into display markup."""
  formatted = text or ""

  formatted = re.sub(r"^### (.*)$", r"<h5>\1</h5>", formatted, flags=re.M)
  formatted = re.sub(r"^## (.*)$", r"<h4>\1</h4>", formatted, flags=re.M)
  formatted = re.sub(r"^# (.*)$", r"<h3>\1</h3>", formatted, flags=re.M)

  formatted = re.sub(r"^[*-] (.*)$", r"<li>\1</li>", formatted, flags=re.M)
  formatted = re.sub(r"(<li>.*</li>\s*)+", r"<ul>\g<0></ul>", formatted, flags=re.S)
  formatted = re.sub(r"^\d+\. (.*)$", r"<li>\1</li>", formatted, flags=re.M)

  formatted = re.sub(r"\*\*(.*?)\*\*", r"<strong>\1</strong>", formatted)
  formatted = re.sub(r"\*(.*?)\*", r"<em>\1</em>", formatted)
  formatted = re.sub(r"`([^`]+)`", r"<code>\1</code>", formatted)

  formatted = "<p>" + formatted.replace("\n\n", "</p><p>") + "</p>"
  formatted = re.sub(r"<p>\s*</p>", "", formatted)
  return formatted


def _classify_http_error(status: int, body: str) -> BuilderError:
  upper = (body or "").upper()
  if "API_KEY_INVALID" in upper or status in (401, 403):
    return CredentialInvalidError("Invalid API key. Please check your Gemini API key configuration.", provider="gemini")
  if "QUOTA_EXCEEDED" in upper or "RESOURCE_EXHAUSTED" in upper or status == 429:
    return QuotaExceededError("API quota exceeded. Please try again later or check your billing.", provider="gemini")
  return BuilderError(f"API Error: {status} - {(body or '')[:500]}", provider="gemini")


class GeminiClient:
  """Thin client around the Gemini generateContent endpoint.

  One request per call, no automatic retries; failures come back as BuilderError
  subclasses so the caller can pick a user-facing message.
  """

  def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None,
               session: Optional[requests.Session] = None, timeout: float = 60.0):
    self.api_key = api_key or GEMINI_API_KEY
    self.model = model or GEMINI_MODEL
    self.base_url = (base_url or GEMINI_BASE_URL).rstrip("/")
    self.session = session or requests.Session()
    self.timeout = timeout

  @property
  def configured(self) -> bool:
    return bool(self.api_key)

  def _generate(self, prompt: str, generation_config: dict) -> str:
    if not self.api_key:
      raise CredentialMissingError("GEMINI_API_KEY is not configured", provider="gemini")

    url = f"{self.base_url}/{self.model}:generateContent"
    payload = {"contents": [{"parts": [{"text": prompt}]}], "generationConfig": generation_config}
    try:
      resp = self.session.post(url, params={"key": self.api_key}, json=payload,
                               headers={"Content-Type": "application/json"}, timeout=self.timeout)
    except requests.RequestException as e:
      logger.error("Gemini request failed before a response: %s", e)
      raise NetworkError("Network error. Please check your internet connection and try again.", provider="gemini") from e

    if resp.status_code >= 400:
      body = resp.text or ""
      logger.error("Gemini API error: status=%s body=%s", resp.status_code, body[:500])
      raise _classify_http_error(resp.status_code, body)

    try:
      data = resp.json()
    except ValueError as e:
      raise MalformedResponseError("Gemini returned a non-JSON response", provider="gemini") from e

    candidates = data.get("candidates") or []
    if not candidates:
      raise MalformedResponseError("No response generated from Gemini API", provider="gemini")
    try:
      text = candidates[0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as e:
      raise MalformedResponseError("Gemini response is missing candidate text", provider="gemini") from e
    logger.info("Gemini response received (%d chars)", len(text))
    return text

  def generate_website_code(self, user_prompt: str) -> str:
    logger.info("Generating website for request: %.120s", user_prompt)
    prompt = WEBSITE_SYSTEM_PROMPT.format(request=user_prompt)
    try:
      text = self._generate(prompt, WEBSITE_GENERATION_CONFIG)
    except (CredentialMissingError, CredentialInvalidError, QuotaExceededError, NetworkError):
      raise
    except BuilderError as e:
      raise e.with_context("Failed to generate website")
    return clean_code_response(text)

  def generate_code_explanation(self, code: str, category: str = "overview") -> str:
    template = EXPLANATION_PROMPTS.get(category)
    if template is None:
      raise ValidationFailure(f"Unknown explanation type: {category}")
    logger.info("Generating code explanation for type: %s", category)
    try:
      text = self._generate(template.format(code=code), EXPLANATION_GENERATION_CONFIG)
    except BuilderError as e:
      raise e.with_context("Failed to generate explanation")
    return format_explanation(text)

  def validate_api_key(self) -> bool:
    """Cheap connectivity check with a one-token generation."""
    try:
      self._generate("Test connection", {"maxOutputTokens": 1})
      return True
    except BuilderError:
      logger.exception("API key validation failed")
      return False
