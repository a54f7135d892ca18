"""
tests/test_parser.py
====================
Tokenizer, parser, AST shape and the function arity table.

Run:  pytest tests/ -v
"""
import pytest

from formula_platform.errors import ParseError
from formula_platform.functions import FUNCTIONS, check_arity, functions_by_category
from formula_platform.nodes import (
    ArrayNode,
    BinaryNode,
    BooleanNode,
    CallNode,
    ComparisonNode,
    MetricRefNode,
    NullNode,
    NumberNode,
    RangeNode,
    StringNode,
    UnaryNode,
)
from formula_platform.parser import parse_formula
from formula_platform.tokenizer import EOF, REF, STRING, tokenize


def root(text):
    return parse_formula(text).root


# ═══════════════════════════════════════════════════════════════════════════════
# 1. TOKENIZER
# ═══════════════════════════════════════════════════════════════════════════════

class TestTokenizer:
    def test_reference_is_one_token(self):
        toks = tokenize("Sales[Q12]")
        assert [t.kind for t in toks] == [REF, EOF]
        assert toks[0].value.metric == "Sales"
        assert toks[0].value.index == 12
        assert toks[0].value.relative is False

    def test_reference_with_percent_name(self):
        tok = tokenize("OPM %[Q3]")[0]
        assert tok.kind == REF
        assert tok.value.metric == "OPM %"
        assert tok.text == "OPM %[Q3]"

    def test_relative_reference(self):
        tok = tokenize("Sales[-2]")[0]
        assert tok.value.index == -2
        assert tok.value.relative is True

    def test_bare_positive_index_is_absolute(self):
        tok = tokenize("Sales[3]")[0]
        assert tok.value.index == 3
        assert tok.value.relative is False

    def test_string_escapes(self):
        tok = tokenize('"say ""hi"""')[0]
        assert tok.kind == STRING
        assert tok.value == 'say "hi"'

    def test_single_quoted_string(self):
        assert tokenize("'BUY'")[0].value == "BUY"

    def test_number_forms(self):
        values = [t.value for t in tokenize("1 2.5 .5 1e3")[:-1]]
        assert values == [1.0, 2.5, 0.5, 1000.0]

    def test_comparators_canonicalised(self):
        comps = [t.value for t in tokenize("1 != 2 == 3 <> 4 >= 5")[:-1] if t.kind == "COMP"]
        assert comps == ["<>", "=", "<>", ">="]

    def test_unterminated_string(self):
        with pytest.raises(ParseError) as exc:
            tokenize('IF(1>0, "BUY, "SELL")')
        assert "Unterminated" in str(exc.value)

    def test_unknown_character(self):
        with pytest.raises(ParseError) as exc:
            tokenize("Sales[Q1] # 2")
        assert exc.value.fragment == "#"
        assert exc.value.position == 10

    @pytest.mark.parametrize("text", ["Sales[Q]", "Sales[X1]", "Sales[Q0]", "Sales[Q1.5]", "Sales[Q12", "Sales[]"])
    def test_malformed_references(self, text):
        with pytest.raises(ParseError) as exc:
            tokenize(text)
        assert "Malformed metric reference" in str(exc.value)


# ═══════════════════════════════════════════════════════════════════════════════
# 2. GRAMMAR
# ═══════════════════════════════════════════════════════════════════════════════

class TestParseExpressions:
    def test_leading_equals_optional(self):
        with_eq, without = root("=1+2"), root("1+2")
        assert with_eq.op == without.op == "+"
        assert (with_eq.left.value, with_eq.right.value) == (without.left.value, without.right.value)

    def test_precedence(self):
        node = root("=1+2*3")
        assert isinstance(node, BinaryNode) and node.op == "+"
        assert isinstance(node.right, BinaryNode) and node.right.op == "*"

    def test_left_associative(self):
        node = root("=10-4-3")
        assert node.op == "-"
        assert isinstance(node.left, BinaryNode) and node.left.op == "-"

    def test_parentheses(self):
        node = root("=(1+2)*3")
        assert node.op == "*"
        assert isinstance(node.left, BinaryNode) and node.left.op == "+"

    def test_power_right_associative(self):
        node = root("=2^3^2")
        assert node.op == "^"
        assert isinstance(node.right, BinaryNode) and node.right.op == "^"

    def test_unary_minus(self):
        node = root("=-Sales[Q12]")
        assert isinstance(node, UnaryNode) and node.op == "-"
        assert isinstance(node.operand, MetricRefNode)

    def test_postfix_percent(self):
        node = root("=20%")
        assert isinstance(node, UnaryNode) and node.op == "%"
        assert node.operand == NumberNode(20.0, (1, 3))

    def test_top_level_comparison(self):
        node = root("=Sales[Q12] > 100")
        assert isinstance(node, ComparisonNode) and node.op == ">"

    def test_comparison_binds_loosest(self):
        node = root("=Sales[Q12] - Sales[Q11] >= 10 * 2")
        assert isinstance(node, ComparisonNode)
        assert isinstance(node.left, BinaryNode) and isinstance(node.right, BinaryNode)

    def test_chained_comparison_rejected(self):
        with pytest.raises(ParseError):
            parse_formula("=1 < 2 < 3")

    def test_literals(self):
        assert isinstance(root('="BUY"'), StringNode)
        assert isinstance(root("=TRUE"), BooleanNode)
        assert root("=false").value is False
        assert isinstance(root("=NULL"), NullNode)

    def test_array_literal(self):
        node = root("={1, 2, 3}")
        assert isinstance(node, ArrayNode)
        assert len(node.items) == 3

    def test_string_concatenation(self):
        node = root('="Q" & 12')
        assert node.op == "&"


class TestParseReferences:
    def test_references_collected_in_order(self):
        parsed = parse_formula('=IF(Sales[Q12]>Sales[Q11],"BUY","HOLD")')
        assert [r.token for r in parsed.references] == ["Sales[Q12]", "Sales[Q11]"]
        assert parsed.metrics == ["Sales"]

    def test_reference_span(self):
        parsed = parse_formula("=Sales[Q12] + 1")
        ref = parsed.references[0]
        assert parsed.source[ref.span[0]:ref.span[1]] == "Sales[Q12]"

    def test_range_expansion(self):
        node = root("=SUM(Sales[Q1]:Sales[Q4])")
        rng = node.args[0]
        assert isinstance(rng, RangeNode)
        assert [r.index for r in rng.refs] == [1, 2, 3, 4]
        assert [r.token for r in rng.refs] == ["Sales[Q1]", "Sales[Q2]", "Sales[Q3]", "Sales[Q4]"]

    def test_reversed_range(self):
        rng = root("=SUM(Sales[Q4]:Sales[Q2])").args[0]
        assert [r.index for r in rng.refs] == [2, 3, 4]

    def test_relative_range(self):
        rng = root("=AVERAGE(Sales[-3]:Sales[0])").args[0]
        assert [r.index for r in rng.refs] == [-3, -2, -1, 0]
        assert all(r.relative for r in rng.refs)

    def test_range_metric_mismatch(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=SUM(Sales[Q1]:EPS[Q4])")
        assert "one metric" in str(exc.value)

    def test_range_mode_mismatch(self):
        with pytest.raises(ParseError):
            parse_formula("=SUM(Sales[Q1]:Sales[0])")

    def test_range_needs_reference_on_both_sides(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=SUM(Sales[Q1]:4)")
        assert "Malformed range" in str(exc.value)

    def test_builder_relative_syntax(self):
        node = root("=Net_Profit(0) > Net_Profit(-4)")
        assert isinstance(node.left, MetricRefNode)
        assert node.left.relative and node.left.index == 0
        assert node.right.index == -4
        assert node.right.metric == "Net_Profit"

    def test_builder_syntax_positive_offset_is_unknown_function(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=Sales(2)")
        assert "Unknown function" in str(exc.value)


class TestParseFunctions:
    def test_case_insensitive(self):
        node = root('=if(1>0,"BUY","SELL")')
        assert isinstance(node, CallNode) and node.name == "IF"

    def test_nested_calls(self):
        node = root("=ROUND(AVERAGE(Sales[Q9]:Sales[Q12]), 2)")
        assert node.name == "ROUND"
        assert node.args[0].name == "AVERAGE"

    def test_zero_argument_call(self):
        assert root("=SUM()").args == ()

    def test_unknown_function(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=FOO(1)")
        assert exc.value.fragment == "FOO"

    def test_if_requires_three_arguments(self):
        with pytest.raises(ParseError) as exc:
            parse_formula('=IF(Sales[Q12]>0,"BUY")')
        assert "IF expects exactly 3" in str(exc.value)
        assert exc.value.fragment == 'IF(Sales[Q12]>0,"BUY")'

    def test_not_arity(self):
        with pytest.raises(ParseError):
            parse_formula("=NOT(TRUE, FALSE)")

    def test_concat_minimum(self):
        with pytest.raises(ParseError):
            parse_formula('=CONCAT("a")')

    def test_let(self):
        node = root("=LET(x, Sales[Q12], y, Sales[Q11], x - y)")
        assert node.name == "LET"
        assert len(node.args) == 5

    def test_let_requires_body(self):
        with pytest.raises(ParseError):
            parse_formula("=LET(x, 1)")

    def test_let_rejects_garbage_after_value(self):
        with pytest.raises(ParseError):
            parse_formula("=LET(x, 1 2)")

    def test_let_variable_out_of_scope(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=LET(x, 1, x) + x")
        assert "Unknown name" in str(exc.value)

    def test_reserved_variable_name(self):
        with pytest.raises(ParseError):
            parse_formula("=LET(SUM, 1, SUM)")

    def test_lambda_in_map(self):
        node = root("=SUM(MAP(Sales[Q9]:Sales[Q12], LAMBDA(v, v * 2)))")
        lam = node.args[0].args[1]
        assert lam.name == "LAMBDA"

    def test_bare_identifier_rejected(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=Sales > 10")
        assert "Unknown name" in str(exc.value)

    def test_function_without_parentheses(self):
        with pytest.raises(ParseError):
            parse_formula("=SUM + 1")


class TestParseErrors:
    @pytest.mark.parametrize("text", [
        "=IF(1>0,\"BUY\",\"SELL\"",
        "=(1+2",
        "=SUM(1,2",
    ])
    def test_unbalanced_open(self, text):
        with pytest.raises(ParseError) as exc:
            parse_formula(text)
        assert "Unbalanced" in str(exc.value)

    def test_unbalanced_close(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=1+2)")
        assert "Unbalanced" in str(exc.value)
        assert exc.value.fragment == ")"

    def test_empty(self):
        with pytest.raises(ParseError):
            parse_formula("=")
        with pytest.raises(ParseError):
            parse_formula("")

    def test_dangling_operator(self):
        with pytest.raises(ParseError):
            parse_formula("=1+")

    def test_trailing_input(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=1 2")
        assert exc.value.fragment == "2"

    def test_missing_comma(self):
        with pytest.raises(ParseError):
            parse_formula("=SUM(1 2)")

    def test_max_length(self):
        with pytest.raises(ParseError):
            parse_formula("=" + "1+" * 50 + "1", max_length=20)

    @pytest.mark.parametrize("text", [
        "=" + "(" * 400 + "1" + ")" * 400,
        "=" + "-" * 3000 + "1",
        "=" + "ABS(" * 100 + "1" + ")" * 100,
        "=2" + "^2" * 100,
        "=" + "1+" * 500 + "1",
    ])
    def test_nested_too_deeply(self, text):
        with pytest.raises(ParseError) as exc:
            parse_formula(text)
        assert "nested too deeply" in str(exc.value)

    def test_reasonable_nesting_accepted(self):
        parse_formula("=" + "(" * 40 + "1" + ")" * 40)
        parse_formula("=" + "+".join(["Sales[Q12]"] * 100))
        parse_formula("=" + "IF(Sales[Q12]>1," * 20 + '"BUY"' + ',"HOLD")' * 20)

    def test_error_carries_position(self):
        with pytest.raises(ParseError) as exc:
            parse_formula("=1 + FOO(2)")
        assert exc.value.position == 5


class TestAst:
    def test_to_dict_is_plain(self):
        d = parse_formula('=IF(Sales[Q12]>10,"BUY","HOLD")').root.to_dict()
        assert d["type"] == "CALL"
        assert d["name"] == "IF"
        assert d["args"][0]["type"] == "COMPARISON"
        assert d["args"][0]["left"]["type"] == "METRIC_REF"
        assert d["args"][0]["left"]["metric"] == "Sales"

    def test_nodes_are_immutable(self):
        node = root("=1")
        with pytest.raises(AttributeError):
            node.value = 2

    def test_parse_is_deterministic(self):
        text = "=SUM(Sales[Q1]:Sales[Q12]) / COUNT(Sales[Q1]:Sales[Q12])"
        assert parse_formula(text) == parse_formula(text)


class TestFunctionTable:
    def test_all_categories_present(self):
        cats = functions_by_category()
        assert {"logical", "math", "text", "error", "conditional", "array"} <= set(cats)

    @pytest.mark.parametrize("name,count", [
        ("IF", 3), ("XOR", 2), ("ROUND", 2), ("LOG", 1), ("LOG", 2), ("SUMIF", 3),
        ("COUNTIF", 2), ("CONCATENATE", 5), ("SUM", 0), ("LET", 5), ("XLOOKUP", 6),
    ])
    def test_valid_arity(self, name, count):
        assert check_arity(name, count).name == name

    @pytest.mark.parametrize("name,count", [
        ("IF", 2), ("IF", 4), ("XOR", 1), ("ABS", 2), ("LOG", 3), ("SUMIF", 1),
        ("COUNTIF", 3), ("AVERAGE", 0), ("LET", 4), ("IFERROR", 1),
    ])
    def test_invalid_arity(self, name, count):
        with pytest.raises(ParseError):
            check_arity(name, count)

    def test_lazy_functions(self):
        lazy = {n for n, spec in FUNCTIONS.items() if spec.lazy}
        assert {"IF", "AND", "OR", "IFERROR", "COALESCE"} <= lazy
        assert "SUM" not in lazy
