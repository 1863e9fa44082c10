"""Shell parsing for the approver: command decomposition and substitution detection.

Both halves use bashlex to build a real AST rather than splitting on
``&&``/``;``/``|`` by string search, which breaks under quoting, heredocs
and nested control structures.

bashlex rejects a few constructs bash accepts: quoted heredoc delimiters,
``time``, ``!``, ``coproc``, ``case``, ``[[ ]]`` and ``(( ))``.  Before
parsing, :class:`_Rewriter` replaces them character for character with text
bashlex does accept, so every AST position still indexes the original
command:

    cat <<'EOF'               -> cat <<EOF
    time -p make              ->         make
    case $x in a) ls;; esac   -> {            ls;  }
    [[ -f x ]] && ls          -> __________ && ls
"""

import re
from dataclasses import dataclass, field

import bashlex
from bashlex import ast as bashast

# $( ... ) or `...` anywhere in the text
DANGEROUS_PATTERN = re.compile(r"\$\(|`")

HEREDOC_OPERATORS = ("<<", "<<-")

# Characters that, anywhere in a heredoc delimiter, turn off expansion of the body
DELIMITER_QUOTES = set("'\"\\")

# Longest first
_OPERATORS = (
    ";;&", "<<<", "<<-",
    "&&", "||", ";;", ";&", "|&", "<<", ">>", "<&", ">&", "<>", ">|",
    ";", "&", "|", "(", ")", "<", ">",
)
_REDIRECTS = frozenset(("<", ">", ">>", "<&", ">&", "<>", ">|", "<<<"))
_CASE_TERMINATORS = frozenset((";;", ";&", ";;&"))
_METACHARS = frozenset(" \t\n;&|()<>")

# Reserved words after which a new command starts
_COMMAND_STARTERS = frozenset(("if", "then", "else", "elif", "while", "until", "do", "{"))

_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")

# Nodes whose ``parts`` hold nested commands
_CONTAINER_KINDS = frozenset(("list", "pipeline", "if", "for", "while", "until"))

# Structural tokens inside containers: keywords, ;/&&/||, |, loop and function header words
_SKIPPED_KINDS = frozenset(("reservedword", "operator", "pipe", "word"))


class UnsupportedConstruct(Exception):
    """The AST holds a node kind the decomposer does not know how to walk."""


@dataclass(frozen=True)
class ShellSegment:
    """One simple command: canonical text plus its span in the source."""

    text: str
    start: int
    end: int

    def contains(self, offset):
        return self.start <= offset < self.end


@dataclass(frozen=True)
class _Token:
    text: str
    start: int
    end: int
    operator: bool = False


def _skip_quoted(text, i):
    """Index just past the quoted or escaped region that starts at ``text[i]``."""
    quote = text[i]
    if quote == "\\":
        return min(i + 2, len(text))
    if quote == "'":
        end = text.find("'", i + 1)
        return len(text) if end < 0 else end + 1
    j = i + 1
    while j < len(text):
        c = text[j]
        if c == "\\":
            j += 2
        elif c == quote:
            return j + 1
        elif quote == '"' and c == "`":
            j = _skip_quoted(text, j)
        elif quote == '"' and text.startswith(("$(", "${"), j):
            j = _skip_group(text, j + 1)
        else:
            j += 1
    return len(text)


def _skip_group(text, i):
    """Index just past the bracket group opened by ``text[i]`` (``(`` or ``{``)."""
    opening = text[i]
    closing = ")" if opening == "(" else "}"
    depth = 0
    j = i
    while j < len(text):
        c = text[j]
        if c in "\\'\"`":
            j = _skip_quoted(text, j)
            continue
        if c == opening:
            depth += 1
        elif c == closing:
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return len(text)


def _word_end(text, i):
    while i < len(text):
        c = text[i]
        if c in "\\'\"`":
            i = _skip_quoted(text, i)
        elif text.startswith(("$(", "${", "<(", ">("), i):
            i = _skip_group(text, i + 1)
        elif c in _METACHARS:
            break
        else:
            i += 1
    return i


def _unquote(word):
    return "".join(c for c in word if c not in DELIMITER_QUOTES)


def _skip_heredoc_body(text, i, delimiter, strip_tabs):
    while i < len(text):
        newline = text.find("\n", i)
        line_end = len(text) if newline < 0 else newline
        line = text[i:line_end]
        if strip_tabs:
            line = line.lstrip("\t")
        i = line_end + 1
        if line == delimiter:
            break
    return min(i, len(text))


def _tokenize(text):
    """Split ``text`` into words and operators; comments and heredoc bodies are dropped."""
    tokens = []
    pending = []
    delimiter_next = None
    i = 0
    while i < len(text):
        c = text[i]
        if c in " \t":
            i += 1
        elif text.startswith("\\\n", i):
            i += 2
        elif c == "\n":
            tokens.append(_Token("\n", i, i + 1, operator=True))
            i += 1
            for delimiter, strip_tabs in pending:
                i = _skip_heredoc_body(text, i, delimiter, strip_tabs)
            pending = []
        elif c == "#":
            newline = text.find("\n", i)
            i = len(text) if newline < 0 else newline
        elif c not in _METACHARS or text.startswith(("<(", ">("), i):
            end = _word_end(text, i)
            tokens.append(_Token(text[i:end], i, end))
            if delimiter_next is not None:
                pending.append((_unquote(text[i:end]), delimiter_next))
                delimiter_next = None
            i = end
        else:
            op = next(o for o in _OPERATORS if text.startswith(o, i))
            tokens.append(_Token(op, i, i + len(op), operator=True))
            if op in HEREDOC_OPERATORS:
                delimiter_next = op == "<<-"
            i += len(op)
    return tokens


class _Rewriter:
    """Same-length rewrite of ``text`` into something bashlex can parse.

    ``quoted_delimiters`` maps the start of each heredoc delimiter word that
    was quoted in the original text to its original end.
    """

    def __init__(self, text):
        self.text = text
        self.tokens = _tokenize(text)
        self.buf = list(text)
        self.quoted_delimiters = {}
        self.i = 0

    def result(self):
        self.walk()
        return "".join(self.buf)

    def fill(self, start, end, replacement=""):
        self.buf[start:end] = replacement.ljust(end - start)

    def peek(self, ahead=0):
        k = self.i + ahead
        return self.tokens[k] if k < len(self.tokens) else None

    def walk(self, case_arm=False):
        """Rewrite tokens until the end, or the end of a case arm.

        Returns True if at least one command was seen.
        """
        command_start = True
        redirect_target = False
        seen_command = False
        while self.i < len(self.tokens):
            tok = self.tokens[self.i]
            if tok.operator:
                if case_arm and tok.text in _CASE_TERMINATORS:
                    return seen_command
                nxt = self.peek(1)
                if command_start and tok.text == "(" and nxt is not None and nxt.text == "(" \
                        and nxt.start == tok.end:
                    self.arithmetic(tok)
                    seen_command, command_start = True, False
                    continue
                self.i += 1
                if tok.text in HEREDOC_OPERATORS:
                    self.heredoc_delimiter()
                    continue
                redirect_target = tok.text in _REDIRECTS
                if not redirect_target:
                    command_start = True
                continue

            if redirect_target:
                redirect_target = False
                self.i += 1
                continue
            if command_start:
                if case_arm and tok.text == "esac":
                    return seen_command
                consumed = self.keyword(tok)
                if consumed == "prefix":
                    continue
                if consumed == "command":
                    seen_command, command_start = True, False
                    continue
            seen_command = True
            command_start = command_start and tok.text in _COMMAND_STARTERS
            self.i += 1
        return seen_command

    def heredoc_delimiter(self):
        tok = self.peek()
        if tok is None or tok.operator:
            return
        self.i += 1
        plain = _unquote(tok.text)
        if plain != tok.text:
            self.quoted_delimiters[tok.start] = tok.end
            self.fill(tok.start, tok.end, plain)

    def keyword(self, tok):
        """Rewrite a construct starting at ``tok``.

        Returns ``"prefix"`` when a command still follows, ``"command"`` when
        a whole command was consumed, or ``None``.
        """
        word = tok.text
        if word in ("time", "!"):
            self.fill(tok.start, tok.end)
            self.i += 1
            option = self.peek()
            if word == "time" and option is not None and option.text == "-p":
                self.fill(option.start, option.end)
                self.i += 1
            return "prefix"
        if word == "coproc":
            self.fill(tok.start, tok.end)
            self.i += 1
            name, body = self.peek(), self.peek(1)
            if name is not None and body is not None and not name.operator \
                    and _NAME.match(name.text) and body.text in ("{", "("):
                self.fill(name.start, name.end)
                self.i += 1
            return "prefix"
        if word == "[[":
            return self.conditional(tok)
        if word == "case":
            return self.case(tok)
        return None

    def conditional(self, tok):
        # [[ ... ]] becomes one opaque word spanning the whole test
        for k in range(self.i + 1, len(self.tokens)):
            if self.tokens[k].text == "]]":
                end = self.tokens[k].end
                self.fill(tok.start, end, "_" * (end - tok.start))
                self.i = k + 1
                return "command"
        return None

    def arithmetic(self, tok):
        end = _skip_group(self.text, tok.start)
        self.fill(tok.start, end, "_" * (end - tok.start))
        while self.i < len(self.tokens) and self.tokens[self.i].start < end:
            self.i += 1

    def skip_newlines(self):
        while self.i < len(self.tokens) and self.tokens[self.i].text == "\n":
            self.i += 1

    def case(self, tok):
        # case WORD in ... esac becomes a { ...; } group of the arm bodies
        n = len(self.tokens)
        k = self.i + 1
        while k < n and not (self.tokens[k].text == "in" and not self.tokens[k].operator):
            k += 1
        if k == n:
            return None
        self.fill(tok.start, self.tokens[k].end, "{")
        self.i = k + 1
        while True:
            self.skip_newlines()
            head = self.peek()
            if head is None:
                return "command"
            if not head.operator and head.text == "esac":
                self.fill(head.start, head.end, "}")
                self.i += 1
                return "command"
            k = self.i
            while k < n and not (self.tokens[k].operator and self.tokens[k].text == ")"):
                k += 1
            if k == n:
                return "command"
            self.fill(head.start, self.tokens[k].end)
            self.i = k + 1
            seen_command = self.walk(case_arm=True)
            terminator = self.peek()
            if terminator is not None and terminator.text in _CASE_TERMINATORS:
                # the arm body may already end in a separator; "ls\n;" does not parse
                separated = self.tokens[self.i - 1].text in ("\n", ";", "&")
                self.fill(terminator.start, terminator.end, ";" if seen_command and not separated else "")
                self.i += 1


@dataclass
class _Parsed:
    trees: list
    quoted_delimiters: dict = field(default_factory=dict)


def _parse(text):
    rewriter = _Rewriter(text)
    rewritten = rewriter.result()
    return _Parsed(bashlex.parse(rewritten), rewriter.quoted_delimiters)


def _iter_nodes(node):
    """Yield ``node`` and every AST node reachable from it."""
    yield node
    for value in vars(node).values():
        if isinstance(value, bashast.node):
            yield from _iter_nodes(value)
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, bashast.node):
                    yield from _iter_nodes(item)


def _heredoc_delimiter(redirect, delimiters):
    """``(start, end)`` of a heredoc redirect's delimiter word in the original text."""
    output = getattr(redirect, "output", None)
    if getattr(output, "pos", None):
        start, end = output.pos
        return start, delimiters.get(start, end)
    body_start = redirect.heredoc.pos[0]
    for start, end in sorted(delimiters.items()):
        if redirect.pos[0] <= start < body_start:
            return start, end
    return None


def _part_text(part, text, delimiters):
    start, end = part.pos
    heredoc = getattr(part, "heredoc", None)
    if heredoc is not None and getattr(heredoc, "pos", None):
        # bashlex stretches a redirect over its heredoc body; keep only "<< EOF"
        delimiter = _heredoc_delimiter(part, delimiters)
        end = delimiter[1] if delimiter else min(end, heredoc.pos[0])
    return text[start:end].strip()


def _serialize(node, text, delimiters):
    pieces = []
    for part in node.parts:
        piece = _part_text(part, text, delimiters)
        if piece:
            pieces.append(piece)
    if not pieces:
        return None
    start, end = node.pos
    return ShellSegment(" ".join(pieces), start, end)


def _collect(node, text, segments, delimiters):
    kind = node.kind
    if kind == "command":
        segment = _serialize(node, text, delimiters)
        if segment is not None:
            segments.append(segment)
    elif kind in _CONTAINER_KINDS:
        for part in node.parts:
            _collect(part, text, segments, delimiters)
    elif kind == "compound":
        # subshell ( ... ), group { ... }, a rewritten case, and the wrapper
        # bashlex puts around if/for/while/until
        for part in node.list:
            _collect(part, text, segments, delimiters)
    elif kind == "function":
        _collect(node.body, text, segments, delimiters)
    elif kind in _SKIPPED_KINDS:
        pass
    else:
        raise UnsupportedConstruct(kind)


def split_command_chain(command):
    """Split a shell command into its simple-command segments.

    Returns a list of :class:`ShellSegment` in left-to-right order, ``[]`` for
    empty or whitespace-only input, or ``None`` if the text cannot be parsed.
    ``None`` covers syntax errors, node kinds the walker does not know and
    pathological nesting; callers must treat it as a rejection.

    Each segment's text is rebuilt from its words, assignments and
    redirections joined by single spaces, so ``ls   -la`` and ``ls -la``
    look the same to pattern matching.  ``time``, ``!`` and ``coproc``
    prefixes are dropped, case arms contribute their bodies, and ``[[ ]]``
    and ``(( ))`` tests are kept verbatim as one segment each.
    """
    if not command.strip():
        return []
    try:
        parsed = _parse(command)
        segments = []
        for tree in parsed.trees:
            _collect(tree, command, segments, parsed.quoted_delimiters)
    except Exception:
        return None
    return segments


def command_names(command):
    """First word of each segment, or ``None`` if unparseable."""
    segments = split_command_chain(command)
    if segments is None:
        return None
    return [s.text.split(None, 1)[0] for s in segments]


def find_quoted_heredoc_ranges(command):
    """Return ``(start, end)`` ranges of heredoc bodies with a quoted delimiter.

    ``<<'EOF'`` / ``<<"EOF"`` / ``<<\\EOF`` bodies are never expanded by the
    shell, so ``$(`` and backticks inside them are literal text.  Unquoted
    heredocs are left out: their bodies do expand.  A parse failure yields
    no ranges.
    """
    try:
        parsed = _parse(command)
    except Exception:
        return []

    ranges = []
    for tree in parsed.trees:
        for node in _iter_nodes(tree):
            if node.kind != "redirect" or getattr(node, "type", None) not in HEREDOC_OPERATORS:
                continue
            heredoc = getattr(node, "heredoc", None)
            if heredoc is None or not getattr(heredoc, "pos", None):
                continue
            delimiter = _heredoc_delimiter(node, parsed.quoted_delimiters)
            if delimiter is None or delimiter[0] not in parsed.quoted_delimiters:
                continue
            start, end = heredoc.pos
            start, end = max(start, 0), min(end, len(command))
            if start < end:
                ranges.append((start, end))
    return ranges


def substitution_offsets(command):
    """Offsets of ``$(`` and backtick markers outside quoted heredoc bodies."""
    excluded = find_quoted_heredoc_ranges(command)
    offsets = []
    for match in DANGEROUS_PATTERN.finditer(command):
        offset = match.start()
        if any(start <= offset < end for start, end in excluded):
            continue
        offsets.append(offset)
    return offsets


def contains_dangerous_pattern(command):
    """True if the command uses command substitution where the shell would run it."""
    return bool(substitution_offsets(command))
