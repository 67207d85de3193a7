"""Prompt library for LLM use cases.

This module provides a centralized registry of versioned prompt templates
used by the LLM gateway. Built-in prompts cover page transcription, document
structuring and quiz generation; YAML files in an optional prompts directory
override or extend them.

Example:
    >>> library = PromptLibrary()
    >>> prompt = library.render("page_transcription", {"page_number": 3,
    ...                                                 "language_name": "English"})
"""

import logging
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..utils.error_handlers import ConfigurationError

logger = logging.getLogger(__name__)


class PromptNotFoundError(ConfigurationError):
    """Raised when a requested prompt is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Prompt not found: {name}", config_key=f"prompts.{name}")


class PromptRenderError(ConfigurationError):
    """Raised when prompt rendering fails."""

    def __init__(self, name: str, reason: str, missing_vars: Optional[List[str]] = None):
        self.name = name
        self.missing_vars = missing_vars or []
        message = f"Failed to render prompt '{name}': {reason}"
        if self.missing_vars:
            message += f" (missing variables: {self.missing_vars})"
        super().__init__(message, config_key=f"prompts.{name}")


@dataclass(frozen=True)
class PromptTemplate:
    """Prompt template definition.

    Attributes:
        name: Unique identifier of the use case (e.g. 'section_quiz').
        version: Version string of the template.
        template: Prompt text with {variable} placeholders.
        system_prompt: Optional system instructions sent with the prompt.
        json_output: Whether the response must be a JSON object.
        max_tokens: Optional response token limit for this use case.
    """

    name: str
    version: str
    template: str
    system_prompt: Optional[str] = None
    json_output: bool = False
    max_tokens: Optional[int] = None
    variables: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ConfigurationError("Prompt name cannot be empty")
        if not self.template.strip():
            raise ConfigurationError(f"Prompt template '{self.name}' cannot be empty")
        if not self.variables:
            names = sorted(
                {
                    fname
                    for _, fname, _, _ in string.Formatter().parse(self.template)
                    if fname
                }
            )
            object.__setattr__(self, "variables", names)


_BUILTIN_PROMPTS: List[PromptTemplate] = [
    PromptTemplate(
        name="page_transcription",
        version="v1",
        system_prompt=(
            "You transcribe scanned course material faithfully. You never "
            "invent content that is not on the page."
        ),
        template=(
            "Transcribe all text on page {page_number} of this document in "
            "{language_name}. Preserve headings, lists and reading order. "
            "Describe any table, diagram, figure, chart or image in one short "
            "sentence in brackets, naming its kind. Return only the transcription."
        ),
    ),
    PromptTemplate(
        name="document_structure",
        version="v1",
        json_output=True,
        system_prompt="You organize course material into coherent study sections.",
        template=(
            "The following transcript covers {page_count} pages of a document "
            "written in {language_name}. Pages are introduced by 'Page N:'.\n\n"
            "{text}\n\n"
            "Split the document into topic sections. Return a JSON object "
            '{{"sections": [{{"title": str, "start_page": int, "end_page": int, '
            '"summary": str, "key_points": [str]}}]}} with pages between 1 and '
            "{page_count}. Write titles, summaries and key points in {language_name}."
        ),
    ),
    PromptTemplate(
        name="section_quiz",
        version="v1",
        json_output=True,
        system_prompt="You write fair multiple choice questions for students.",
        template=(
            "Section title: {title}\n\n{text}\n\n"
            "Write exactly {question_count} multiple choice questions in "
            "{language_name} that test understanding of this section. Return a "
            'JSON object {{"questions": [{{"question": str, "choices": [str, str, '
            'str, str], "correct_index": int, "explanation": str}}]}} where '
            "correct_index is between 0 and 3."
        ),
    ),
]


class PromptLibrary:
    """Registry of prompt templates.

    Attributes:
        prompts_dir: Optional directory of YAML prompt overrides.
    """

    def __init__(self, prompts_dir: Optional[str] = None) -> None:
        self.prompts_dir = Path(prompts_dir) if prompts_dir else None
        self._prompts: Dict[str, PromptTemplate] = {p.name: p for p in _BUILTIN_PROMPTS}

        if self.prompts_dir and self.prompts_dir.is_dir():
            for prompt_file in sorted(self.prompts_dir.glob("*.yaml")):
                self._load_yaml_prompt(prompt_file)

        logger.debug(f"PromptLibrary loaded {len(self._prompts)} prompts")

    def _load_yaml_prompt(self, prompt_file: Path) -> None:
        """Load one YAML prompt file, replacing a built-in of the same name."""
        try:
            with open(prompt_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            prompt = PromptTemplate(
                name=data.get("name", prompt_file.stem),
                version=str(data.get("version", "custom")),
                template=data["template"],
                system_prompt=data.get("system_prompt"),
                json_output=bool(data.get("json_output", False)),
                max_tokens=data.get("max_tokens"),
            )
        except (OSError, yaml.YAMLError, KeyError) as e:
            raise ConfigurationError(
                f"Invalid prompt file {prompt_file}: {e}", config_key="prompts_dir"
            ) from e

        self._prompts[prompt.name] = prompt
        logger.info(f"Loaded prompt '{prompt.name}' ({prompt.version}) from {prompt_file}")

    def get_prompt(self, name: str) -> PromptTemplate:
        try:
            return self._prompts[name]
        except KeyError:
            raise PromptNotFoundError(name) from None

    def render(self, name: str, context: Dict[str, Any]) -> str:
        """Render the named template with `context`.

        Raises:
            PromptNotFoundError: If no template is registered under `name`.
            PromptRenderError: If variables are missing.
        """
        template = self.get_prompt(name)
        missing = [v for v in template.variables if v not in context]
        if missing:
            raise PromptRenderError(name, "missing variables", missing)
        try:
            return template.template.format(**context)
        except (IndexError, KeyError, ValueError) as e:
            raise PromptRenderError(name, str(e)) from e

    def list_prompts(self) -> List[str]:
        return sorted(self._prompts)
