"""Unit tests for spoken declaration parsing and rendering."""

import unittest

from code_templates import delimiters_balanced, detect_indent_unit, detect_naming, parse, render, tokenize
from models import CorrectionContext

RUST_STRUCT = "create a struct called user config with fields id string and timeout u64"


class TestParse(unittest.TestCase):

    def test_struct_with_typed_fields(self):
        decl = parse(RUST_STRUCT)
        self.assertEqual(decl.kind, 'struct')
        self.assertEqual(decl.name, ['user', 'config'])
        self.assertEqual([(i.name, i.type) for i in decl.items],
                         [(['id'], ['string']), (['timeout'], ['u64'])])

    def test_split_numeric_type_joined(self):
        self.assertEqual(tokenize("timeout U 64."), ['timeout', 'u64'])

    def test_function_params_and_return(self):
        decl = parse("define a function called load config that takes path string and returns bool")
        self.assertEqual(decl.kind, 'function')
        self.assertEqual(decl.name, ['load', 'config'])
        self.assertEqual(decl.items[0].name, ['path'])
        self.assertEqual(decl.returns, ['bool'])

    def test_plain_speech_is_not_a_declaration(self):
        self.assertIsNone(parse("fix the bug in the parser"))
        self.assertIsNone(parse("I think the struct is wrong"))
        self.assertIsNone(parse("create a struct"))

    def test_leading_kind_word_needs_verb_or_name(self):
        self.assertIsNone(parse("class is over"))
        self.assertIsNone(parse("function returns early here"))
        decl = parse("class called user service")
        self.assertEqual(decl.kind, 'class')
        self.assertEqual(decl.name, ['user', 'service'])


class TestRender(unittest.TestCase):

    def test_rust_struct(self):
        code = render(RUST_STRUCT, CorrectionContext(language='rust'))
        self.assertEqual(code, "struct UserConfig {\n    id: String,\n    timeout: u64,\n}")
        self.assertTrue(delimiters_balanced(code))

    def test_go_struct_exports_fields(self):
        code = render(RUST_STRUCT, CorrectionContext(language='go'))
        self.assertTrue(code.startswith("type UserConfig struct {"))
        self.assertIn("\tTimeout uint64", code)

    def test_typescript_interface(self):
        code = render(RUST_STRUCT, CorrectionContext(language='typescript'))
        self.assertEqual(code, "interface UserConfig {\n    id: string;\n    timeout: number;\n}")

    def test_python_function(self):
        code = render("define a function called load config that takes path string and returns bool",
                      CorrectionContext(language='python'))
        self.assertEqual(code, "def load_config(path: str) -> bool:\n    pass")

    def test_python_enum(self):
        code = render("create an enum called color with variants red, green and blue",
                      CorrectionContext(language='python'))
        self.assertEqual(code, "class Color(Enum):\n    RED = auto()\n    GREEN = auto()\n    BLUE = auto()")

    def test_rust_constant(self):
        code = render("define a constant called max retries equal to 5", CorrectionContext(language='rust'))
        self.assertEqual(code, "const MAX_RETRIES: i64 = 5;")

    def test_unsupported_language(self):
        self.assertIsNone(render(RUST_STRUCT, CorrectionContext(language='haskell')))
        self.assertIsNone(render(RUST_STRUCT, CorrectionContext()))

    def test_follows_current_line_indentation(self):
        context = CorrectionContext(language='rust', current_line="    ")
        code = render(RUST_STRUCT, context)
        self.assertEqual(code.split('\n'), ["struct UserConfig {", "        id: String,",
                                            "        timeout: u64,", "    }"])


class TestContextStyle(unittest.TestCase):

    def test_naming_follows_surrounding_code(self):
        camel_ctx = CorrectionContext(preceding_lines=("userName = getUser()", "retryCount = 0"))
        snake_ctx = CorrectionContext(preceding_lines=("user_name = get_user()",))
        self.assertEqual(detect_naming(camel_ctx, 'snake'), 'camel')
        self.assertEqual(detect_naming(snake_ctx, 'camel'), 'snake')
        self.assertEqual(detect_naming(CorrectionContext(), 'snake'), 'snake')

    def test_indent_unit(self):
        two = CorrectionContext(preceding_lines=("def f():", "  return 1"))
        tabs = CorrectionContext(preceding_lines=("func f() {", "\treturn"))
        self.assertEqual(detect_indent_unit(two, 'python'), '  ')
        self.assertEqual(detect_indent_unit(tabs, 'go'), '\t')
        self.assertEqual(detect_indent_unit(CorrectionContext(), 'go'), '\t')

    def test_camel_context_in_python_class(self):
        context = CorrectionContext(language='python', preceding_lines=("userName = getUser()",))
        code = render("create a class called session with fields user name and retry count",
                      context)
        self.assertIn("def __init__(self, userName, retryCount):", code)


class TestDelimiters(unittest.TestCase):

    def test_balanced(self):
        self.assertTrue(delimiters_balanced("fn main() { let v = vec![1, 2]; }"))
        self.assertTrue(delimiters_balanced('let s = "{";'))

    def test_unbalanced(self):
        self.assertFalse(delimiters_balanced("fn main() {"))
        self.assertFalse(delimiters_balanced("([)]"))
        self.assertFalse(delimiters_balanced('"open'))


if __name__ == '__main__':
    unittest.main()
