from __future__ import annotations

from typing import Optional

_FIELD_SHAPE_HINT = """Return ONLY a JSON array of objects. Each object must have:
- "id": string, unique within the form (camelCase)
- "type": one of "text" | "textarea" | "number" | "radio" | "checkbox" | "select"
- "label": string, the question shown to the respondent
- "placeholder": string (optional; only for text, textarea, number)
- "options": array of strings (required for radio, checkbox, select; omit otherwise)
- "required": boolean

Example:
[
  {"id": "fullName", "type": "text", "label": "Full name", "placeholder": "Jane Doe", "required": true},
  {"id": "experience", "type": "radio", "label": "Years of experience", "options": ["0-2", "3-5", "6+"], "required": false}
]

Do not include markdown formatting, code fences, or any explanation before or after the array."""


def build_prompt_from_text(prompt: str) -> str:
    """Free-form request: the user described the whole form in one sentence."""
    return f'Generate a list of form fields for a form about: "{prompt.strip()}".\n\n{_FIELD_SHAPE_HINT}\n'


def build_prompt_from_topic(topic: str, question_count: int, description: Optional[str] = None) -> str:
    details = f" with the following details: {description.strip()}" if description and description.strip() else ""
    return (
        f'You are an expert form designer. Create a form with {question_count} questions about "{topic.strip()}"{details}.\n'
        "Pick the field type that best fits each question and keep labels clear and concise.\n\n"
        f"{_FIELD_SHAPE_HINT}\n"
    )
