# src/elb_log_ingest/grok.py

"""
A small grok-style field extractor built on `re`.

Pattern definitions use the familiar logstash syntax:

    %{SYNTAX}              match SYNTAX, capture nothing
    %{SYNTAX:name}         capture the match as `name`
    %{SYNTAX:name:int}     capture and convert (`int` or `float`)

SYNTAX names resolve against `BASE_PATTERNS` (which may themselves contain
references) and are expanded into a single regular expression with named
groups. Matching is unanchored, as in grok; anchor a definition explicitly
with `^`/`$` when needed.
"""

import re
from typing import Any, Callable, Mapping

from .exceptions import GrokPatternError

_REFERENCE = re.compile(r"%\{(?P<syntax>\w+)(?::(?P<name>[\w@.\-]+))?(?::(?P<type>\w+))?\}")
_MAX_DEPTH = 25

# A trimmed library covering what load balancer access logs need.
BASE_PATTERNS: dict[str, str] = {
    "USERNAME": r"[a-zA-Z0-9._-]+",
    "USER": r"%{USERNAME}",
    "INT": r"(?:[+-]?(?:[0-9]+))",
    "BASE10NUM": r"(?<![0-9.+-])(?>[+-]?(?:(?:[0-9]+(?:\.[0-9]+)?)|(?:\.[0-9]+)))",
    "NUMBER": r"(?:%{BASE10NUM})",
    "POSINT": r"\b(?:[1-9][0-9]*)\b",
    "WORD": r"\b\w+\b",
    "NOTSPACE": r"\S+",
    "SPACE": r"\s*",
    "DATA": r".*?",
    "GREEDYDATA": r".*",
    "QUOTEDSTRING": r'"(?:[^"\\]|\\.)*"',
    "IPV6": r"(?:[0-9A-Fa-f]{0,4}:){2,7}(?:[0-9A-Fa-f]{1,4}|(?:\d{1,3}\.){3}\d{1,3})?",
    "IPV4": r"(?<![0-9])(?:(?:[0-1]?[0-9]{1,2}|2[0-4][0-9]|25[0-5])[.](?:[0-1]?[0-9]{1,2}|2[0-4][0-9]|25[0-5])[.](?:[0-1]?[0-9]{1,2}|2[0-4][0-9]|25[0-5])[.](?:[0-1]?[0-9]{1,2}|2[0-4][0-9]|25[0-5]))(?![0-9])",
    "IP": r"(?:%{IPV6}|%{IPV4})",
    "HOSTNAME": r"\b(?:[0-9A-Za-z][0-9A-Za-z-]{0,62})(?:\.(?:[0-9A-Za-z][0-9A-Za-z-]{0,62}))*(?:\.?|\b)",
    "IPORHOST": r"(?:%{IP}|%{HOSTNAME})",
    "URIPROTO": r"[A-Za-z]+(?:\+[A-Za-z+]+)?",
    "URIHOST": r"%{IPORHOST}(?::%{POSINT:port})?",
    "URIPATH": r"(?:/[A-Za-z0-9$.+!*'(){},~:;=@#%&_\-]*)+",
    "URIPARAM": r"\?[A-Za-z0-9$.+!*'|(){},~@#%&/=:;_?\-\[\]<>]*",
    "YEAR": r"(?>\d\d){1,2}",
    "MONTHNUM": r"(?:0?[1-9]|1[0-2])",
    "MONTHDAY": r"(?:(?:0[1-9])|(?:[12][0-9])|(?:3[01])|[1-9])",
    "HOUR": r"(?:2[0123]|[01]?[0-9])",
    "MINUTE": r"(?:[0-5][0-9])",
    "SECOND": r"(?:(?:[0-5]?[0-9]|60)(?:[:.,][0-9]+)?)",
    "ISO8601_TIMEZONE": r"(?:Z|[+-]%{HOUR}(?::?%{MINUTE}))",
    "TIMESTAMP_ISO8601": r"%{YEAR}-%{MONTHNUM}-%{MONTHDAY}[T ]%{HOUR}:?%{MINUTE}(?::?%{SECOND})?%{ISO8601_TIMEZONE}?",
    "ELB_URIPATHPARAM": r"%{URIPATH:path}(?:%{URIPARAM:params})?",
    "ELB_URI": r"%{URIPROTO:proto}://(?:%{USER}(?::[^@]*)?@)?(?:%{URIHOST:urihost})?(?:%{ELB_URIPATHPARAM})?",
    "ELB_REQUEST_LINE": r"(?:%{WORD:verb} %{ELB_URI:request}(?: HTTP/%{NUMBER:httpversion})?|%{DATA:rawrequest})",
}

_CONVERTERS: dict[str, Callable[[str], Any]] = {
    "int": int,
    "float": float,
}


class GrokPattern:
    """A compiled grok definition that extracts named fields from text."""

    def __init__(self, definition: str, patterns: Mapping[str, str] | None = None):
        self.definition = definition
        self._library = dict(BASE_PATTERNS)
        if patterns:
            self._library.update(patterns)
        self._converters: dict[str, Callable[[str], Any]] = {}
        self._group_names: dict[str, str] = {}
        expanded = self._expand(definition, depth=0)
        try:
            self.regex = re.compile(expanded)
        except re.error as e:
            raise GrokPatternError(
                f"Grok definition does not compile: {e}",
                context={"definition": definition},
            ) from e

    def _expand(self, text: str, depth: int) -> str:
        if depth > _MAX_DEPTH:
            raise GrokPatternError(
                "Grok pattern references nest too deeply",
                context={"definition": self.definition},
            )

        def replace(match: re.Match) -> str:
            syntax, name, type_ = match.group("syntax", "name", "type")
            if syntax not in self._library:
                raise GrokPatternError(
                    f"Unknown grok pattern: {syntax}",
                    context={"definition": self.definition},
                )
            body = self._expand(self._library[syntax], depth + 1)
            if not name:
                return f"(?:{body})"

            if name in self._group_names.values():
                raise GrokPatternError(
                    f"Field captured twice: {name}",
                    context={"definition": self.definition},
                )
            # Field names may contain characters `re` group names reject.
            group = f"g{len(self._group_names)}"
            self._group_names[group] = name
            if type_:
                if type_ not in _CONVERTERS:
                    raise GrokPatternError(
                        f"Unsupported capture type: {type_}",
                        context={"definition": self.definition},
                    )
                self._converters[name] = _CONVERTERS[type_]
            return f"(?P<{group}>{body})"

        return _REFERENCE.sub(replace, text)

    def match(self, text: str) -> dict[str, Any] | None:
        """
        Return the captured fields of the first match in *text*, or None.

        Groups that did not take part in the match are left out.
        """
        found = self.regex.search(text)
        if found is None:
            return None

        captures: dict[str, Any] = {}
        for group, value in found.groupdict().items():
            if value is None:
                continue
            name = self._group_names[group]
            converter = self._converters.get(name)
            if converter is not None:
                try:
                    value = converter(value)
                except ValueError:
                    pass  # keep the raw text, as grok does
            captures[name] = value
        return captures

    def __repr__(self) -> str:
        return f"GrokPattern({self.definition!r})"
