"""
Diagnostic script for PSD mockup templates.

Prints the layer structure of a template and shows which layer each
configured design-layer name resolves to. Run this when a template keeps
falling back to the basic mockup:

    python diagnose_template.py path/to/template.psd [--export flattened.png]
"""

import argparse
import sys

from dotenv import load_dotenv

from mockup_service.config import Settings
from mockup_service.models.mockups import LayerNode, LayerTree
from mockup_service.services.layer_locator import find_layer
from mockup_service.services.psd_parser import PSDParser


def print_layer_structure(tree: LayerTree, node: LayerNode, depth: int = 0) -> None:
    box = node.bbox
    kind = "group" if node.is_group else "layer"
    hidden = "" if node.visible else " (hidden)"
    print(f"{'  ' * depth}- [{kind}] \"{node.name}\" {box.width}x{box.height} at ({box.left},{box.top}){hidden}")
    for child in tree.children_of(node):
        print_layer_structure(tree, child, depth + 1)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("template", help="Path to a PSD template")
    parser.add_argument("--export", help="Write the flattened template to this PNG path")
    parser.add_argument("--layer", action="append", help="Layer name to test (repeatable)")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = Settings.from_env()
    candidates = args.layer or list(settings.layer_names)

    print("\n" + "=" * 60)
    print(f"TEMPLATE DIAGNOSTICS: {args.template}")
    print("=" * 60)

    psd = PSDParser(args.template)
    if not psd.parse():
        print("✗ Failed to parse PSD file")
        return 1

    width, height = psd.get_dimensions()
    print(f"✓ PSD parsed: {width}x{height}, {len(psd.tree)} layers\n")

    print("Layer structure:")
    for root in psd.tree.roots:
        print_layer_structure(psd.tree, root)

    print("\nDesign layer candidates:")
    for name in candidates:
        layer = find_layer(psd.tree, name)
        if layer is None:
            print(f"  ✗ \"{name}\" not found")
        else:
            box = layer.bbox
            print(f"  ✓ \"{name}\" -> \"{layer.name}\" {box.width}x{box.height} at ({box.left},{box.top})")

    if args.export:
        if psd.export_flattened_image(args.export):
            print(f"\n✓ Flattened image exported to: {args.export}")
        else:
            print("\n✗ Failed to export flattened image")
            return 1

    print("=" * 60 + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
