"""Token table loading and de-tokenization.

Token files hold one ``<symbol> <id>`` pair per line. Whisper token files
store each symbol base64-encoded since its pieces are raw byte strings.
"""

import base64
import binascii
import re
from collections.abc import Iterable, Mapping
from pathlib import Path

from streamasr.exceptions import ConfigError

WORD_BOUNDARY = "▁"  # sentencepiece "▁"
_BYTE_PIECE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")


class SymbolTable:
    """Bidirectional mapping between token ids and symbols."""

    def __init__(self, id_to_symbol: Mapping[int, str], base64_encoded: bool = False):
        self._id2sym = dict(id_to_symbol)
        self._sym2id = {sym: idx for idx, sym in self._id2sym.items()}
        self._base64 = base64_encoded

    @classmethod
    def from_file(cls, path: str | Path, base64_encoded: bool = False) -> "SymbolTable":
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"tokens file does not exist: {path}")

        id2sym: dict[int, str] = {}
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.rstrip("\r\n")
                if not line.strip():
                    continue
                fields = line.split()
                if len(fields) == 1:
                    # A bare id is the space symbol in some tables.
                    sym, idx = " ", fields[0]
                elif len(fields) == 2:
                    sym, idx = fields
                else:
                    raise ConfigError(f"{path}:{lineno}: expected '<symbol> <id>', got {line!r}")
                try:
                    id2sym[int(idx)] = sym
                except ValueError:
                    raise ConfigError(f"{path}:{lineno}: invalid token id {idx!r}") from None

        if not id2sym:
            raise ConfigError(f"tokens file is empty: {path}")
        return cls(id2sym, base64_encoded=base64_encoded)

    def __len__(self) -> int:
        return len(self._id2sym)

    def __contains__(self, item: int | str) -> bool:
        if isinstance(item, str):
            return item in self._sym2id
        return item in self._id2sym

    def symbol(self, token_id: int) -> str:
        return self._id2sym[token_id]

    def id(self, symbol: str) -> int:
        return self._sym2id[symbol]

    def symbols(self, token_ids: Iterable[int]) -> list[str]:
        """Display form of each token id. Ids not in the table are skipped."""
        token_ids = [t for t in token_ids if t in self._id2sym]
        if self._base64:
            return [self._piece_bytes(t).decode("utf-8", errors="replace") for t in token_ids]
        return [self.symbol(t) for t in token_ids]

    def detokenize(self, token_ids: Iterable[int]) -> str:
        """Join token ids into text, skipping ids not in the table."""
        token_ids = [t for t in token_ids if t in self._id2sym]
        if self._base64:
            raw = b"".join(self._piece_bytes(t) for t in token_ids)
            return raw.decode("utf-8", errors="replace").strip()

        out = bytearray()
        for t in token_ids:
            sym = self.symbol(t)
            m = _BYTE_PIECE.match(sym)
            if m:
                out.append(int(m.group(1), 16))
            else:
                out.extend(sym.replace(WORD_BOUNDARY, " ").encode("utf-8"))
        return out.decode("utf-8", errors="replace").strip()

    def _piece_bytes(self, token_id: int) -> bytes:
        sym = self.symbol(token_id)
        try:
            return base64.b64decode(sym, validate=True)
        except binascii.Error:
            return sym.encode("utf-8")
