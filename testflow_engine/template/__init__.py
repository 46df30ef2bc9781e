from testflow_engine.template.renderer import (
    TemplateContext,
    extract_references,
    resolve,
    resolve_body,
    resolve_json_text,
)
from testflow_engine.template.tokenizer import TemplateSource, TemplateSpan, find_spans

__all__ = [
    "TemplateContext",
    "TemplateSource",
    "TemplateSpan",
    "extract_references",
    "find_spans",
    "resolve",
    "resolve_body",
    "resolve_json_text",
]
