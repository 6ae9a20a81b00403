"""codevoice code templates — spoken declarations rendered as code.

Handles the common "create a struct called user config with fields id string
and timeout u64" family of commands for rust, python, go, typescript and
javascript. Anything the grammar does not recognise returns None and is left
to the rest of the corrector.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from logging_utils import log_debug

SUPPORTED_LANGUAGES = ('rust', 'python', 'go', 'typescript', 'javascript')

_VERBS = {'create', 'make', 'add', 'define', 'declare', 'generate', 'write', 'new', 'insert'}
_ARTICLES = {'a', 'an', 'the', 'new'}
_PUBLIC = {'public', 'pub', 'exported'}

_KINDS = {
    'struct': 'struct', 'structure': 'struct', 'record': 'struct',
    'class': 'class',
    'enum': 'enum', 'enumeration': 'enum',
    'function': 'function', 'func': 'function', 'method': 'function', 'fn': 'function',
    'interface': 'interface', 'trait': 'interface', 'protocol': 'interface',
    'variable': 'variable', 'var': 'variable',
    'constant': 'constant', 'const': 'constant',
}

_ITEM_NOUNS = {'field', 'fields', 'parameter', 'parameters', 'param', 'params', 'argument',
               'arguments', 'args', 'member', 'members', 'property', 'properties', 'variant',
               'variants', 'value', 'values', 'attribute', 'attributes', 'method', 'methods'}

_CLAUSE_WORDS = {'with', 'that', 'takes', 'taking', 'accepting', 'accepts', 'returning',
                 'returns', 'equal', 'equals', 'set', '='}

_TYPE_MODIFIERS = {'list', 'vec', 'vector', 'array', 'optional', 'option', 'of'}

# Spoken type name -> canonical type key
_TYPE_ALIASES = {
    'string': 'string', 'str': 'string', 'text': 'string',
    'int': 'int', 'integer': 'int', 'number': 'int',
    'float': 'float', 'double': 'float', 'decimal': 'float',
    'bool': 'bool', 'boolean': 'bool',
    'u8': 'u8', 'u16': 'u16', 'u32': 'u32', 'u64': 'u64', 'usize': 'usize',
    'i8': 'i8', 'i16': 'i16', 'i32': 'i32', 'i64': 'i64', 'isize': 'isize',
    'f32': 'f32', 'f64': 'f64',
    'bytes': 'bytes', 'char': 'char',
}

TYPE_MAPS = {
    'rust': {
        'string': 'String', 'int': 'i64', 'float': 'f64', 'bool': 'bool', 'bytes': 'Vec<u8>',
        'char': 'char', 'u8': 'u8', 'u16': 'u16', 'u32': 'u32', 'u64': 'u64', 'usize': 'usize',
        'i8': 'i8', 'i16': 'i16', 'i32': 'i32', 'i64': 'i64', 'isize': 'isize',
        'f32': 'f32', 'f64': 'f64',
    },
    'python': {
        'string': 'str', 'int': 'int', 'float': 'float', 'bool': 'bool', 'bytes': 'bytes',
        'char': 'str', 'u8': 'int', 'u16': 'int', 'u32': 'int', 'u64': 'int', 'usize': 'int',
        'i8': 'int', 'i16': 'int', 'i32': 'int', 'i64': 'int', 'isize': 'int',
        'f32': 'float', 'f64': 'float',
    },
    'go': {
        'string': 'string', 'int': 'int', 'float': 'float64', 'bool': 'bool', 'bytes': '[]byte',
        'char': 'rune', 'u8': 'uint8', 'u16': 'uint16', 'u32': 'uint32', 'u64': 'uint64',
        'usize': 'uint', 'i8': 'int8', 'i16': 'int16', 'i32': 'int32', 'i64': 'int64',
        'isize': 'int', 'f32': 'float32', 'f64': 'float64',
    },
    'typescript': {
        'string': 'string', 'int': 'number', 'float': 'number', 'bool': 'boolean',
        'bytes': 'Uint8Array', 'char': 'string', 'u8': 'number', 'u16': 'number',
        'u32': 'number', 'u64': 'number', 'usize': 'number', 'i8': 'number', 'i16': 'number',
        'i32': 'number', 'i64': 'number', 'isize': 'number', 'f32': 'number', 'f64': 'number',
    },
}

DEFAULT_INDENT = {
    'rust': '    ', 'python': '    ', 'go': '\t', 'typescript': '    ', 'javascript': '    ',
}

# "u 64", "U-64" -> u64
_SPLIT_NUMERIC_TYPE_RE = re.compile(r'\b([uif])[\s-]+(8|16|32|64|128|size)\b')
_TOKEN_RE = re.compile(r"[a-z0-9_]+(?:\.[0-9]+)?|=|,")
_SNAKE_RE = re.compile(r'\b[a-z][a-z0-9]*(?:_[a-z0-9]+)+\b')
_CAMEL_RE = re.compile(r'\b[a-z][a-z0-9]*(?:[A-Z][a-z0-9]+)+\b')


@dataclass
class Item:
    name: List[str]
    type: Optional[List[str]] = None


@dataclass
class Declaration:
    kind: str
    name: List[str]
    public: bool = False
    items: List[Item] = field(default_factory=list)
    returns: Optional[List[str]] = None
    value: Optional[List[str]] = None


def tokenize(text):
    text = text.lower().replace("'", "")
    text = _SPLIT_NUMERIC_TYPE_RE.sub(r'\1\2', text)
    return _TOKEN_RE.findall(text)


def parse(text):
    """Parse a spoken declaration into a Declaration, or None if it is not one."""
    words = tokenize(text)
    pos = 0
    public = False
    commanded = False
    while pos < len(words) and pos < 6:
        word = words[pos]
        if word in _VERBS:
            commanded = True
        elif word in _PUBLIC:
            public = True
        elif word not in _ARTICLES:
            break
        pos += 1
    if pos >= len(words) or words[pos] not in _KINDS:
        return None
    if not commanded and pos != 0:
        return None
    kind = _KINDS[words[pos]]
    pos += 1

    if pos < len(words) and words[pos] in ('called', 'named'):
        pos += 1
    elif not commanded:
        # "class is over" is prose; a bare kind word needs an explicit name.
        return None
    name_end = pos
    while name_end < len(words) and words[name_end] not in _CLAUSE_WORDS and words[name_end] != ',':
        name_end += 1
    name = words[pos:name_end]
    if not name:
        return None
    decl = Declaration(kind=kind, name=name, public=public)

    pos = name_end
    while pos < len(words):
        word = words[pos]
        if word == 'that':
            pos += 1
            continue
        if word in ('with',) and pos + 1 < len(words) and words[pos + 1] == 'value':
            decl.value, pos = _take_rest(words, pos + 2)
        elif word == 'with' or word in ('takes', 'taking', 'accepting', 'accepts'):
            pos += 1
            if pos < len(words) and words[pos] in _ITEM_NOUNS:
                pos += 1
            items, pos = _take_items(words, pos)
            decl.items.extend(items)
        elif word in ('returns', 'returning'):
            pos += 1
            if pos < len(words) and words[pos] in ('a', 'an', 'the'):
                pos += 1
            decl.returns, pos = _take_phrase(words, pos)
        elif word in ('equal', 'equals', 'set', '='):
            pos += 1
            if pos < len(words) and words[pos] == 'to':
                pos += 1
            decl.value, pos = _take_rest(words, pos)
        else:
            pos += 1
    return decl


def _take_phrase(words, pos):
    end = pos
    while end < len(words) and words[end] not in _CLAUSE_WORDS and words[end] not in ('and', ','):
        end += 1
    return words[pos:end] or None, end


def _take_rest(words, pos):
    rest = [w for w in words[pos:] if w != ',']
    return rest or None, len(words)


def _take_items(words, pos):
    items = []
    current = []
    while pos < len(words):
        word = words[pos]
        if word in ('and', ','):
            if current:
                items.append(_split_item(current))
                current = []
            if pos + 1 < len(words) and words[pos + 1] in _CLAUSE_WORDS:
                pos += 1
                break
        elif word in _CLAUSE_WORDS:
            break
        else:
            current.append(word)
        pos += 1
    if current:
        items.append(_split_item(current))
    return items, pos


def _split_item(words):
    for marker in ('type', 'as'):
        if marker in words[1:]:
            i = words.index(marker, 1)
            name = words[:i]
            if name and name[-1] == 'of':
                name = name[:-1]
            if name and words[i + 1:]:
                return Item(name, words[i + 1:])
    if len(words) > 1 and words[-1] in _TYPE_ALIASES:
        start = len(words) - 1
        while start - 1 >= 1 and words[start - 1] in _TYPE_MODIFIERS:
            start -= 1
        return Item(words[:start], words[start:])
    return Item(words)


# --- naming ---------------------------------------------------------------

def snake(words):
    return '_'.join(words)


def camel(words):
    return words[0] + ''.join(w.capitalize() for w in words[1:]) if words else ''


def pascal(words):
    return ''.join(w.upper() if w in ('id', 'url', 'http', 'api', 'json') and len(words) > 1
                   else w.capitalize() for w in words)


def screaming(words):
    return '_'.join(words).upper()


def detect_naming(context, default):
    """'snake' or 'camel', whichever the surrounding code uses more."""
    lines = list(context.preceding_lines) + [context.current_line] + list(context.following_lines)
    text = '\n'.join(lines)
    snakes = len(_SNAKE_RE.findall(text))
    camels = len(_CAMEL_RE.findall(text))
    if snakes > camels:
        return 'snake'
    if camels > snakes:
        return 'camel'
    return default


def detect_indent_unit(context, language):
    """Indent unit of the surrounding code: a tab, or the smallest space run seen."""
    widths = []
    for line in list(context.preceding_lines) + list(context.following_lines):
        if line.startswith('\t'):
            return '\t'
        stripped = line.lstrip(' ')
        width = len(line) - len(stripped)
        if width and stripped:
            widths.append(width)
    if widths:
        return ' ' * min(widths)
    return DEFAULT_INDENT.get(language, '    ')


# --- rendering ------------------------------------------------------------

def render_type(words, language):
    """Spoken type phrase -> language type, or None if the language is untyped."""
    if language == 'javascript' or not words:
        return None
    words = [w for w in words if w != 'of']
    head, rest = words[0], words[1:]
    if head in ('list', 'vec', 'vector', 'array') and rest:
        inner = render_type(rest, language)
        return {'rust': f'Vec<{inner}>', 'python': f'list[{inner}]',
                'go': f'[]{inner}', 'typescript': f'{inner}[]'}[language]
    if head in ('optional', 'option') and rest:
        inner = render_type(rest, language)
        return {'rust': f'Option<{inner}>', 'python': f'{inner} | None',
                'go': f'*{inner}', 'typescript': f'{inner} | undefined'}[language]
    if len(words) == 1 and head in _TYPE_ALIASES:
        return TYPE_MAPS[language][_TYPE_ALIASES[head]]
    return pascal(words)


def render_value(words):
    if not words:
        return None
    text = ' '.join(words)
    if re.fullmatch(r'-?\d+(\s*(point|\.)\s*\d+)?', text):
        return re.sub(r'\s*(point|\.)\s*', '.', text)
    if text in ('true', 'false'):
        return text
    if text in ('none', 'null', 'nil'):
        return text
    return '"' + text + '"'


def _value_type(value, language):
    if value is None:
        return None
    if value in ('true', 'false'):
        return TYPE_MAPS[language]['bool']
    if re.fullmatch(r'-?\d+', value):
        return TYPE_MAPS[language]['int']
    if re.fullmatch(r'-?\d+\.\d+', value):
        return TYPE_MAPS[language]['float']
    return {'rust': '&str', 'python': 'str', 'go': 'string', 'typescript': 'string'}[language]


class Renderer:
    """Renders one Declaration for one language, in the naming and indent style given."""

    def __init__(self, language, naming, indent):
        self.language = language
        self.naming = naming
        self.indent = indent

    def member(self, words):
        if self.language == 'go':
            return pascal(words)
        if self.language == 'rust':
            return snake(words)
        return snake(words) if self.naming == 'snake' else camel(words)

    def param(self, words):
        if self.language == 'go':
            return camel(words)
        return self.member(words)

    def type_name(self, words):
        return pascal(words)

    def typed(self, item, sep=': '):
        name = self.param(item.name)
        type_ = render_type(item.type, self.language) if item.type else None
        if type_ is None:
            if self.language in ('rust', 'go', 'typescript'):
                type_ = self._fallback_type()
            else:
                return name
        if self.language == 'go':
            return f'{name} {type_}'
        return f'{name}{sep}{type_}'

    def _fallback_type(self):
        return {'rust': 'String', 'go': 'string', 'typescript': 'unknown'}[self.language]

    def render(self, decl):
        method = getattr(self, f'render_{decl.kind}')
        return method(decl)

    # struct / class

    def render_struct(self, decl):
        lang = self.language
        name = self.type_name(decl.name)
        i = self.indent
        if lang == 'rust':
            prefix = 'pub ' if decl.public else ''
            fields = [f'{i}{prefix}{self.typed(item)},' for item in decl.items]
            return '\n'.join([f'{prefix}struct {name} {{'] + fields + ['}'])
        if lang == 'go':
            fields = [f'{i}{self.member(item.name)} {render_type(item.type, lang) if item.type else "string"}'
                      for item in decl.items]
            return '\n'.join([f'type {name} struct {{'] + fields + ['}'])
        if lang == 'typescript':
            prefix = 'export ' if decl.public else ''
            fields = [f'{i}{self.typed(Item(item.name, item.type))};' for item in decl.items]
            keyword = 'class' if decl.kind == 'class' else 'interface'
            return '\n'.join([f'{prefix}{keyword} {name} {{'] + fields + ['}'])
        return self.render_class(decl)

    def render_class(self, decl):
        lang = self.language
        name = self.type_name(decl.name)
        i = self.indent
        if lang in ('rust', 'go', 'typescript'):
            return self.render_struct(decl)
        params = [self.typed(item) for item in decl.items]
        if lang == 'python':
            lines = [f'class {name}:']
            if not decl.items:
                return '\n'.join(lines + [f'{i}pass'])
            lines.append(f'{i}def __init__(self, {", ".join(params)}):')
            for item in decl.items:
                attr = self.member(item.name)
                lines.append(f'{i}{i}self.{attr} = {attr}')
            return '\n'.join(lines)
        prefix = 'export ' if decl.public else ''
        lines = [f'{prefix}class {name} {{', f'{i}constructor({", ".join(params)}) {{']
        for item in decl.items:
            attr = self.member(item.name)
            lines.append(f'{i}{i}this.{attr} = {attr};')
        return '\n'.join(lines + [f'{i}}}', '}'])

    # enum

    def render_enum(self, decl):
        lang = self.language
        name = self.type_name(decl.name)
        variants = [item.name for item in decl.items]
        i = self.indent
        if lang in ('rust', 'typescript'):
            prefix = {'rust': 'pub ', 'typescript': 'export '}[lang] if decl.public else ''
            body = [f'{i}{pascal(v)},' for v in variants]
            return '\n'.join([f'{prefix}enum {name} {{'] + body + ['}'])
        if lang == 'python':
            body = [f'{i}{screaming(v)} = auto()' for v in variants] or [f'{i}pass']
            return '\n'.join([f'class {name}(Enum):'] + body)
        if lang == 'go':
            lines = [f'type {name} int', '', 'const (']
            for n, v in enumerate(variants):
                suffix = f' {name} = iota' if n == 0 else ''
                lines.append(f'{i}{name}{pascal(v)}{suffix}')
            return '\n'.join(lines + [')'])
        body = [f"{i}{screaming(v)}: '{snake(v)}'," for v in variants]
        return '\n'.join([f'const {name} = Object.freeze({{'] + body + ['});'])

    # function

    def render_function(self, decl):
        lang = self.language
        i = self.indent
        params = ', '.join(self.typed(item) for item in decl.items)
        returns = render_type(decl.returns, lang) if decl.returns else None
        if lang == 'rust':
            prefix = 'pub ' if decl.public else ''
            arrow = f' -> {returns}' if returns else ''
            return f'{prefix}fn {snake(decl.name)}({params}){arrow} {{\n{i}todo!()\n}}'
        if lang == 'python':
            arrow = f' -> {returns}' if returns else ''
            name = snake(decl.name) if self.naming != 'camel' else camel(decl.name)
            return f'def {name}({params}){arrow}:\n{i}pass'
        if lang == 'go':
            name = pascal(decl.name) if decl.public else camel(decl.name)
            ret = f' {returns}' if returns else ''
            return f'func {name}({params}){ret} {{\n}}'
        name = snake(decl.name) if self.naming == 'snake' else camel(decl.name)
        prefix = 'export ' if decl.public else ''
        ret = f': {returns}' if returns and lang == 'typescript' else ''
        return f'{prefix}function {name}({params}){ret} {{\n}}'

    # interface

    def render_interface(self, decl):
        lang = self.language
        name = self.type_name(decl.name)
        i = self.indent
        if lang == 'rust':
            prefix = 'pub ' if decl.public else ''
            return f'{prefix}trait {name} {{\n}}'
        if lang == 'go':
            return f'type {name} interface {{\n}}'
        if lang == 'typescript':
            return self.render_struct(Declaration('interface', decl.name, decl.public, decl.items))
        if lang == 'python':
            lines = [f'class {name}(Protocol):']
            lines += [f'{i}{self.typed(item)}' for item in decl.items] or [f'{i}...']
            return '\n'.join(lines)
        return None

    # variable / constant

    def render_variable(self, decl):
        lang = self.language
        value = render_value(decl.value) or {'python': 'None', 'go': 'nil'}.get(lang, 'null')
        name = self.param(decl.name)
        if lang == 'rust':
            if value == 'null':
                value = 'None'
            return f'let {snake(decl.name)} = {value};'
        if lang == 'python':
            return f'{name} = {value}'
        if lang == 'go':
            return f'{name} := {value}'
        return f'let {name} = {value};'

    def render_constant(self, decl):
        lang = self.language
        value = render_value(decl.value)
        if value is None:
            return None
        if lang == 'rust':
            return f'const {screaming(decl.name)}: {_value_type(value, lang)} = {value};'
        if lang == 'python':
            return f'{screaming(decl.name)} = {value}'
        if lang == 'go':
            return f'const {camel(decl.name)} = {value}'
        return f'const {screaming(decl.name)} = {value};'


def render(text, context):
    """Spoken declaration -> code for context.language, or None if not applicable."""
    language = context.language
    if language not in SUPPORTED_LANGUAGES:
        return None
    decl = parse(text)
    if decl is None:
        return None
    default_naming = 'snake' if language in ('rust', 'python') else 'camel'
    renderer = Renderer(language, detect_naming(context, default_naming),
                        detect_indent_unit(context, language))
    code = renderer.render(decl)
    if code is None:
        return None

    # The first line goes in at the cursor; the rest follow the current line's indentation.
    base = context.indentation
    if base:
        lines = code.split('\n')
        code = '\n'.join([lines[0]] + [base + line if line else line for line in lines[1:]])
    log_debug(f"[TEMPLATE] {decl.kind} '{' '.join(decl.name)}' rendered for {language}")
    return code


def delimiters_balanced(text):
    """True if (), [] and {} nest correctly outside string literals."""
    pairs = {')': '(', ']': '[', '}': '{'}
    stack = []
    quote = None
    escaped = False
    for ch in text:
        if quote:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', '`'):
            quote = ch
        elif ch in '([{':
            stack.append(ch)
        elif ch in pairs:
            if not stack or stack.pop() != pairs[ch]:
                return False
    return not stack and quote is None
