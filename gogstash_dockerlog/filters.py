import re
from typing import Iterable, Pattern, Sequence, Tuple

from .config import ConfigError


def normalize_name(name: str) -> str:
    # A API do Docker devolve nomes com "/" no início ("/web-1")
    return name[1:] if name.startswith("/") else name


class NameFilter:
    """
    Filtro de containers por nome.
    - Exclusões têm precedência absoluta sobre inclusões.
    - Sem padrões de inclusão: tudo que não for excluído é aceito.
    - Com padrões de inclusão: o container precisa casar com ao menos um.
    Os padrões são expressões regulares aplicadas com re.search (casamento parcial).
    """

    def __init__(self, includes: Sequence[Pattern], excludes: Sequence[Pattern]):
        self.includes: Tuple[Pattern, ...] = tuple(includes)
        self.excludes: Tuple[Pattern, ...] = tuple(excludes)

    @classmethod
    def compile(cls, include_patterns: Iterable[str], exclude_patterns: Iterable[str]) -> "NameFilter":
        return cls(_compile_all(include_patterns, "include"), _compile_all(exclude_patterns, "exclude"))

    def is_eligible(self, names: Iterable[str]) -> bool:
        for name in names:
            name = normalize_name(name)
            for pattern in self.excludes:
                if pattern.search(name):
                    return False
            for pattern in self.includes:
                if pattern.search(name):
                    return True
        return not self.includes

    def __repr__(self):
        return (f"NameFilter(includes={[p.pattern for p in self.includes]}, "
                f"excludes={[p.pattern for p in self.excludes]})")


def _compile_all(patterns: Iterable[str], kind: str):
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ConfigError(f"padrão {kind} inválido {pattern!r}: {e}") from e
    return compiled
