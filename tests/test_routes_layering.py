import ast
import unittest
from pathlib import Path


ROUTES_DIR = Path(__file__).resolve().parents[1] / "orderflow" / "routes"


class RoutesLayeringTest(unittest.TestCase):
    def test_route_handlers_do_not_embed_sql_or_flow_rules(self) -> None:
        forbidden_snippets = (
            "db.execute(",
            "resolve_transition(",
            "transition_status(",
            "set_order_status(",
            "put_order_status(",
        )

        checked = 0
        for path in sorted(ROUTES_DIR.glob("*_routes.py")):
            source = path.read_text(encoding="utf-8")
            module = ast.parse(source)
            lines = source.splitlines()
            for node in module.body:
                if not isinstance(node, ast.FunctionDef):
                    continue
                decorator_src = "\n".join(lines[d.lineno - 1] for d in node.decorator_list)
                if "_bp.route" not in decorator_src:
                    continue

                checked += 1
                body_src = "\n".join(lines[node.lineno - 1 : node.end_lineno])
                for snippet in forbidden_snippets:
                    self.assertNotIn(
                        snippet,
                        body_src,
                        msg=f"Route handler `{path.name}:{node.name}` should not contain `{snippet}`",
                    )

        self.assertGreater(checked, 10)


if __name__ == "__main__":
    unittest.main()
