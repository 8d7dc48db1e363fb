"""
Hostplay Templating Engine

Jinja2-based Template/Condition Evaluator. Expressions evaluate to native
Python values; failures come back as explicit ``Evaluation`` records that
carry an undefined-variable or evaluation-error classification.
"""

import base64
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError

from hostplay.engine.errors import EvaluationError, TemplateError, UndefinedVariableError


# A string that is exactly one "{{ expr }}" renders to the expression's native value
_SINGLE_EXPRESSION = re.compile(r'^\{\{\s*(.+?)\s*\}\}$', re.DOTALL)
_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined|has no attribute '([^']+)'")


def _filter_to_yaml(value: Any) -> str:
    """Convert value to YAML string."""
    return yaml.safe_dump(value, default_flow_style=False)


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


def _filter_regex_replace(value: str, pattern: str, replacement: str) -> str:
    """Regex replacement in string."""
    return re.sub(pattern, replacement, str(value))


def _filter_b64decode(value: str) -> str:
    """Decode base64 encoded string."""
    return base64.b64decode(value).decode('utf-8')


def _filter_b64encode(value: Union[str, bytes]) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(value.encode('utf-8')).decode('utf-8')


def _filter_combine(*dicts: Dict[str, Any], recursive: bool = False) -> Dict[str, Any]:
    """Merge mappings left to right."""
    from hostplay.engine.variables import deep_merge

    result: Dict[str, Any] = {}
    for d in dicts:
        if recursive:
            result = deep_merge(result, d)
        else:
            result.update(d)
    return result


# Filters added on top of Jinja2's builtins (default/d come from Jinja2 itself)
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'to_json': lambda x: json.dumps(x),
    'to_yaml': _filter_to_yaml,
    'from_json': lambda x: json.loads(x),
    'bool': _filter_bool,
    'basename': lambda p: os.path.basename(str(p)),
    'dirname': lambda p: os.path.dirname(str(p)),
    'regex_replace': _filter_regex_replace,
    'b64decode': _filter_b64decode,
    'b64encode': _filter_b64encode,
    'combine': _filter_combine,
}


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating an expression: a value or a classified error."""

    value: Any = None
    error: Optional[TemplateError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TemplateEngine:
    """
    Jinja2 templating engine with Ansible-like behavior.

    Provides:
    - Variable interpolation in strings
    - Recursive template rendering in dicts/lists
    - Native values for single-expression strings ("{{ port }}" -> 8080)
    - Boolean condition evaluation for when/changed_when/failed_when/until
    """

    def __init__(self) -> None:
        self.env = Environment(
            undefined=StrictUndefined,
            # Don't auto-escape (we're not rendering HTML)
            autoescape=False,
            # Keep trailing newlines
            keep_trailing_newline=True,
        )
        self.env.filters.update(CUSTOM_FILTERS)
        self.env.tests['string'] = lambda x: isinstance(x, str)
        self.env.tests['number'] = lambda x: isinstance(x, (int, float)) and not isinstance(x, bool)
        self.env.tests['mapping'] = lambda x: isinstance(x, dict)
        self.env.tests['sequence'] = lambda x: isinstance(x, (list, tuple))
        self.env.tests['success'] = lambda r: isinstance(r, dict) and not r.get('failed', False)
        self.env.tests['succeeded'] = self.env.tests['success']
        self.env.tests['failed'] = lambda r: isinstance(r, dict) and bool(r.get('failed', False))
        self.env.tests['changed'] = lambda r: isinstance(r, dict) and bool(r.get('changed', False))
        self.env.tests['skipped'] = lambda r: isinstance(r, dict) and bool(r.get('skipped', False))

    # Raising API

    def expression(self, expr: str, variables: Dict[str, Any]) -> Any:
        """
        Evaluate a bare Jinja2 expression (no braces) to a native value.

        Raises:
            UndefinedVariableError: If the expression references an undefined name
            EvaluationError: For syntax or runtime errors
        """
        try:
            compiled = self.env.compile_expression(expr, undefined_to_none=False)
            value = compiled(**variables)
            # Force StrictUndefined results to raise
            if isinstance(value, StrictUndefined):
                str(value)
            return value
        except UndefinedError as e:
            raise UndefinedVariableError(self._undefined_name(e), template=expr) from e
        except TemplateSyntaxError as e:
            raise EvaluationError(f"syntax error: {e}", template=expr) from e
        except Exception as e:
            raise EvaluationError(str(e), template=expr) from e

    def render(self, template_str: Any, variables: Dict[str, Any]) -> Any:
        """
        Render a template string with variables.

        Args:
            template_str: String potentially containing {{ }} expressions
            variables: Dictionary of variables for rendering

        Returns:
            Rendered string, or the native value for a single-expression string

        Raises:
            TemplateError: If template is invalid or variable is undefined
        """
        if not isinstance(template_str, str):
            return template_str

        # Fast path: no template markers
        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        single = _SINGLE_EXPRESSION.match(template_str)
        if single and '{{' not in single.group(1):
            return self.expression(single.group(1), variables)

        try:
            template = self.env.from_string(template_str)
            return template.render(variables)
        except UndefinedError as e:
            raise UndefinedVariableError(self._undefined_name(e), template=template_str) from e
        except TemplateSyntaxError as e:
            raise EvaluationError(f"syntax error: {e}", template=template_str) from e
        except Exception as e:
            raise EvaluationError(str(e), template=template_str) from e

    def render_recursive(self, data: Any, variables: Dict[str, Any]) -> Any:
        """
        Recursively render templates in a data structure.

        Args:
            data: Data structure (dict, list, or scalar)
            variables: Dictionary of variables for rendering

        Returns:
            Data structure with all templates rendered
        """
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {
                self.render(k, variables) if isinstance(k, str) else k:
                self.render_recursive(v, variables)
                for k, v in data.items()
            }

        if isinstance(data, list):
            return [self.render_recursive(item, variables) for item in data]

        # Return other types as-is (int, float, bool, None)
        return data

    def condition(self, condition: Any, variables: Dict[str, Any]) -> bool:
        """
        Evaluate a condition to a boolean.

        ``condition`` may be a bool, an expression string, or a list of
        those (all must hold).
        """
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, list):
            return all(self.condition(c, variables) for c in condition)

        expr = str(condition).strip()
        single = _SINGLE_EXPRESSION.match(expr)
        if single:
            expr = single.group(1)
        return to_bool(self.expression(expr, variables))

    # Non-raising API

    def evaluate(self, expression: Any, variables: Dict[str, Any]) -> Evaluation:
        """Evaluate an expression or template to a native value."""
        try:
            if isinstance(expression, str) and '{{' not in expression and '{%' not in expression:
                return Evaluation(value=self.expression(expression, variables))
            return Evaluation(value=self.render_recursive(expression, variables))
        except TemplateError as e:
            return Evaluation(error=e)

    def evaluate_condition(self, condition: Any, variables: Dict[str, Any]) -> Evaluation:
        """Evaluate a when/changed_when/failed_when/until condition."""
        try:
            return Evaluation(value=self.condition(condition, variables))
        except TemplateError as e:
            return Evaluation(error=e)

    def template(self, data: Any, variables: Dict[str, Any]) -> Evaluation:
        """Render module arguments or other structured data."""
        try:
            return Evaluation(value=self.render_recursive(data, variables))
        except TemplateError as e:
            return Evaluation(error=e)

    @staticmethod
    def _undefined_name(error: UndefinedError) -> Optional[str]:
        match = _UNDEFINED_NAME.search(str(error))
        if not match:
            return None
        return match.group(1) or match.group(2)


def to_bool(value: Any) -> bool:
    """Convert a value to boolean (Ansible-style)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        value_lower = value.lower().strip()
        if value_lower in ('true', 'yes', '1', 'on'):
            return True
        if value_lower in ('false', 'no', '0', 'off', '', 'none'):
            return False
        return True
    return bool(value)


# Singleton instance for convenience
_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Get the singleton template engine instance."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine
