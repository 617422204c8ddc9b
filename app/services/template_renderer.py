"""Placeholder substitution for email subject and body templates."""
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Set
import re


PLACEHOLDER_PATTERN = re.compile(r"\{([A-Za-z0-9_]+)\}")

# Placeholders the request email templates must contain
REQUIRED_SUBJECT_PLACEHOLDERS = ["CODE", "MONTH_NAME", "YEAR"]
REQUIRED_BODY_PLACEHOLDERS = ["REQUEST_LINES", "SIGNATURE"]


@dataclass(frozen=True)
class EmailTemplate:
    """Subject and body text containing {PLACEHOLDER} tokens."""
    subject: str
    body: str


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    body: str

    def to_dict(self) -> Dict[str, str]:
        return {"subject": self.subject, "body": self.body}


class TemplateRenderer:
    """Pure renderer; holds no state."""

    @staticmethod
    def render_text(text: str, variables: Mapping[str, object]) -> str:
        """
        Substitute known placeholders in one string.

        Unknown placeholders are left verbatim. Substituted values are not
        scanned again, so a value containing braces is inserted as-is.

        Args:
            text: Template text
            variables: Placeholder name to value

        Returns:
            Rendered text
        """
        def replace(match: "re.Match") -> str:
            name = match.group(1)
            if name in variables:
                value = variables[name]
                return "" if value is None else str(value)
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(replace, text)

    def render(self, template: EmailTemplate, variables: Mapping[str, object]) -> RenderedEmail:
        """
        Render subject and body.

        Args:
            template: Template to render
            variables: Placeholder name to value

        Returns:
            RenderedEmail with every known placeholder substituted
        """
        return RenderedEmail(
            subject=self.render_text(template.subject, variables),
            body=self.render_text(template.body, variables)
        )

    @staticmethod
    def extract_placeholders(template: EmailTemplate) -> Set[str]:
        """Names of all placeholders in subject and body combined."""
        names = set(PLACEHOLDER_PATTERN.findall(template.subject))
        names.update(PLACEHOLDER_PATTERN.findall(template.body))
        return names

    def validate(self, template: EmailTemplate, required_names: Iterable[str]) -> bool:
        """True iff every required name appears in the template."""
        present = self.extract_placeholders(template)
        return all(name in present for name in required_names)

    def missing_placeholders(self, template: EmailTemplate, required_names: Iterable[str]) -> Set[str]:
        present = self.extract_placeholders(template)
        return {name for name in required_names if name not in present}
