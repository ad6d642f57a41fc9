"""
Family tree connector rendering.

Given the people of a tree, their relationship edges and the on-screen
position of every card, produce the SVG lines that connect them.

A spouse pair with at least one child is drawn as a *family unit*: one
marriage line, a vertical drop from its midpoint (the T-joint), a horizontal
spread across the children and a leader line down to each child. Every edge
absorbed by a family unit is left out of the per-edge renderer so nothing is
drawn twice. A spouse pair without children falls through to the per-edge
renderer and becomes a plain marriage line.

Positions are the top-left corner of a card in canvas coordinates.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

CARD_WIDTH = 264
CARD_HEIGHT = 160
DROP_LENGTH = 60
CANVAS_PADDING = 100

MARRIAGE_COLOR = '#f59e0b'
MARRIAGE_HIGHLIGHT = '#ec4899'
DESCENT_COLOR = '#6b7280'
DESCENT_HIGHLIGHT = '#3b82f6'


@dataclass
class FamilyUnit:
    parents: Tuple[str, str]
    children: List[str] = field(default_factory=list)
    marriage_relationships: List[dict] = field(default_factory=list)
    parent_child_relationships: List[dict] = field(default_factory=list)

    def involves(self, person_id) -> bool:
        return person_id is not None and (person_id in self.parents or person_id in self.children)

    def to_dict(self):
        return {
            'parents': list(self.parents),
            'children': list(self.children),
            'marriage_relationship_ids': [r['id'] for r in self.marriage_relationships],
            'parent_child_relationship_ids': [r['id'] for r in self.parent_child_relationships]
        }


def _key(value):
    # ids arrive as ints from the database and as strings from JSON position maps
    return None if value is None else str(value)


def normalize_relationship(rel) -> dict:
    """Accept a Relationship model or a mapping, return a plain dict with string ids"""
    if not isinstance(rel, dict):
        rel = rel.to_dict()
    return {
        'id': _key(rel['id']),
        'from_person_id': _key(rel['from_person_id']),
        'to_person_id': _key(rel['to_person_id']),
        'relationship_type': rel['relationship_type']
    }


def normalize_positions(positions) -> Dict[str, Tuple[float, float]]:
    result = {}
    for person_id, pos in (positions or {}).items():
        if pos is None:
            continue
        if isinstance(pos, dict):
            x, y = pos.get('x'), pos.get('y')
        else:
            x, y = pos
        if x is None or y is None:
            continue
        result[_key(person_id)] = (float(x), float(y))
    return result


def group_family_units(relationships) -> List[FamilyUnit]:
    """
    Group spouse pairs and their children into family units.

    Spouse edges are visited in order. A pair is skipped when either partner
    already belongs to an earlier pair. Children are the targets of parent
    edges leaving either partner, deduplicated in first-seen order. Pairs
    without children do not form a unit.
    """
    rels = [normalize_relationship(r) for r in relationships]
    units = []
    processed = set()

    for spouse_rel in rels:
        if spouse_rel['relationship_type'] != 'spouse':
            continue
        a, b = spouse_rel['from_person_id'], spouse_rel['to_person_id']
        if a in processed or b in processed:
            continue
        processed.add(a)
        processed.add(b)
        parents = (a, b)

        children = []
        for rel in rels:
            if rel['relationship_type'] == 'parent' and rel['from_person_id'] in parents:
                if rel['to_person_id'] not in children:
                    children.append(rel['to_person_id'])

        if not children:
            continue

        parent_child = [
            rel for rel in rels
            if rel['relationship_type'] == 'parent'
            and rel['from_person_id'] in parents
            and rel['to_person_id'] in children
        ]
        pair = frozenset(parents)
        marriages = [
            rel for rel in rels
            if rel['relationship_type'] == 'spouse'
            and frozenset((rel['from_person_id'], rel['to_person_id'])) == pair
        ]
        units.append(FamilyUnit(
            parents=parents,
            children=children,
            marriage_relationships=marriages,
            parent_child_relationships=parent_child
        ))

    return units


def handled_relationship_ids(units) -> set:
    handled = set()
    for unit in units:
        handled.update(rel['id'] for rel in unit.marriage_relationships)
        handled.update(rel['id'] for rel in unit.parent_child_relationships)
    return handled


def individual_relationships(relationships, units) -> List[dict]:
    """Edges not absorbed by any family unit, one spouse edge per couple"""
    handled = handled_relationship_ids(units)
    couples = set()
    result = []
    for rel in (normalize_relationship(r) for r in relationships):
        if rel['id'] in handled:
            continue
        if rel['relationship_type'] == 'spouse':
            pair = frozenset((rel['from_person_id'], rel['to_person_id']))
            if pair in couples:
                continue
            couples.add(pair)
        result.append(rel)
    return result


def _line(x1, y1, x2, y2, stroke, highlighted, kind, dashed=False, arrow=False, **extra):
    element = {
        'tag': 'line',
        'kind': kind,
        'x1': x1, 'y1': y1, 'x2': x2, 'y2': y2,
        'stroke': stroke,
        'stroke_width': 3 if highlighted else 2,
        'dashed': dashed,
        'arrow': arrow
    }
    element.update(extra)
    return element


def family_unit_elements(unit: FamilyUnit, positions, selected_person_id=None) -> Optional[List[dict]]:
    """
    Connector elements for one family unit.

    Returns None when either parent has no position. Children without a
    position are left out.
    """
    positions = normalize_positions(positions)
    selected = _key(selected_person_id)
    p1 = positions.get(unit.parents[0])
    p2 = positions.get(unit.parents[1])
    if p1 is None or p2 is None:
        return None

    left, right = (p1, p2) if p1[0] < p2[0] else (p2, p1)
    marriage_start_x = left[0] + CARD_WIDTH
    marriage_end_x = right[0]
    marriage_y = left[1] + CARD_HEIGHT / 2

    joint_x = (marriage_start_x + marriage_end_x) / 2
    drop_end_y = marriage_y + DROP_LENGTH

    placed_children = sorted(
        ((child_id, positions[child_id]) for child_id in unit.children if child_id in positions),
        key=lambda item: item[1][0]
    )

    highlighted = unit.involves(selected)
    marriage_stroke = MARRIAGE_HIGHLIGHT if highlighted else MARRIAGE_COLOR
    descent_stroke = DESCENT_HIGHLIGHT if highlighted else DESCENT_COLOR

    elements = [
        _line(marriage_start_x, marriage_y, marriage_end_x, marriage_y,
              marriage_stroke, highlighted, 'marriage', dashed=True,
              parents=list(unit.parents))
    ]

    if placed_children:
        elements.append(_line(joint_x, marriage_y, joint_x, drop_end_y,
                              descent_stroke, highlighted, 'drop'))

    if len(placed_children) > 1:
        centres = [pos[0] + CARD_WIDTH / 2 for _, pos in placed_children]
        elements.append(_line(min(centres), drop_end_y, max(centres), drop_end_y,
                              descent_stroke, highlighted, 'spread'))

    for child_id, pos in placed_children:
        centre_x = pos[0] + CARD_WIDTH / 2
        elements.append(_line(centre_x, drop_end_y, centre_x, pos[1],
                              descent_stroke, highlighted, 'child', arrow=True,
                              child=child_id))

    return elements


def relationship_element(rel, positions, selected_person_id=None) -> Optional[dict]:
    """
    Connector for a single edge outside any family unit.

    Parent edges become an orthogonal path through the vertical midpoint,
    drawn downwards when the parent card sits above the child and upwards
    otherwise. Spouse edges become a dashed line between the facing card
    edges. Child edges and edges with a missing endpoint yield None.
    """
    rel = normalize_relationship(rel)
    positions = normalize_positions(positions)
    selected = _key(selected_person_id)
    from_pos = positions.get(rel['from_person_id'])
    to_pos = positions.get(rel['to_person_id'])
    if from_pos is None or to_pos is None:
        return None

    highlighted = selected is not None and selected in (rel['from_person_id'], rel['to_person_id'])

    if rel['relationship_type'] == 'parent':
        start_x = from_pos[0] + CARD_WIDTH / 2
        end_x = to_pos[0] + CARD_WIDTH / 2
        if from_pos[1] < to_pos[1]:
            start_y = from_pos[1] + CARD_HEIGHT
            end_y = to_pos[1]
        else:
            start_y = from_pos[1]
            end_y = to_pos[1] + CARD_HEIGHT
        mid_y = start_y + (end_y - start_y) / 2
        return {
            'tag': 'path',
            'kind': 'parent',
            'relationship_id': rel['id'],
            'd': f'M {_fmt(start_x)} {_fmt(start_y)} L {_fmt(start_x)} {_fmt(mid_y)} '
                 f'L {_fmt(end_x)} {_fmt(mid_y)} L {_fmt(end_x)} {_fmt(end_y)}',
            'stroke': DESCENT_HIGHLIGHT if highlighted else DESCENT_COLOR,
            'stroke_width': 3 if highlighted else 2,
            'dashed': False,
            'arrow': True
        }

    if rel['relationship_type'] == 'spouse':
        if from_pos[0] < to_pos[0]:
            start_x = from_pos[0] + CARD_WIDTH
            end_x = to_pos[0]
        else:
            start_x = from_pos[0]
            end_x = to_pos[0] + CARD_WIDTH
        return _line(start_x, from_pos[1] + CARD_HEIGHT / 2, end_x, to_pos[1] + CARD_HEIGHT / 2,
                     MARRIAGE_HIGHLIGHT if highlighted else MARRIAGE_COLOR, highlighted,
                     'spouse', dashed=True, relationship_id=rel['id'])

    return None


def canvas_bounds(positions) -> Optional[Tuple[float, float, float, float]]:
    positions = normalize_positions(positions)
    if not positions:
        return None
    xs = [p[0] for p in positions.values()]
    ys = [p[1] for p in positions.values()]
    return (
        min(xs) - CANVAS_PADDING,
        min(ys) - CANVAS_PADDING,
        max(xs) + CARD_WIDTH + CANVAS_PADDING,
        max(ys) + CARD_HEIGHT + CANVAS_PADDING
    )


def build_connections(relationships, positions, selected_person_id=None, people=None) -> dict:
    """
    All connector elements for a tree.

    When ``people`` is given, edges touching anyone outside it are ignored.
    """
    rels = [normalize_relationship(r) for r in relationships]
    if people is not None:
        known = {_key(p['id'] if isinstance(p, dict) else p.id) for p in people}
        rels = [r for r in rels if r['from_person_id'] in known and r['to_person_id'] in known]

    units = group_family_units(rels)
    elements = []
    for unit in units:
        unit_elements = family_unit_elements(unit, positions, selected_person_id)
        if unit_elements:
            elements.extend(unit_elements)
    for rel in individual_relationships(rels, units):
        element = relationship_element(rel, positions, selected_person_id)
        if element is not None:
            elements.append(element)

    return {
        'bounds': canvas_bounds(positions),
        'family_units': [u.to_dict() for u in units],
        'elements': elements
    }


def _fmt(value):
    return f'{value:g}'


def _element_svg(element):
    common = f'stroke="{element["stroke"]}" stroke-width="{element["stroke_width"]}" stroke-linecap="round"'
    if element['dashed']:
        common += ' stroke-dasharray="8 4"'
    if element['arrow']:
        common += ' marker-end="url(#arrow-parent)"'
    if element['tag'] == 'path':
        return f'<path d="{element["d"]}" fill="none" {common} stroke-linejoin="round"/>'
    return (
        f'<line x1="{_fmt(element["x1"])}" y1="{_fmt(element["y1"])}" '
        f'x2="{_fmt(element["x2"])}" y2="{_fmt(element["y2"])}" {common}/>'
    )


def render_svg(relationships, positions, selected_person_id=None, people=None) -> Optional[str]:
    """SVG document with every connector, or None when nothing is positioned"""
    result = build_connections(relationships, positions, selected_person_id, people)
    if result['bounds'] is None:
        return None

    min_x, min_y, max_x, max_y = result['bounds']
    width = max_x - min_x
    height = max_y - min_y
    body = '\n    '.join(_element_svg(e) for e in result['elements'])

    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{_fmt(width)}" height="{_fmt(height)}" '
        f'viewBox="0 0 {_fmt(width)} {_fmt(height)}" data-left="{_fmt(min_x)}" data-top="{_fmt(min_y)}">\n'
        f'  <defs>\n'
        f'    <marker id="arrow-parent" viewBox="0 0 10 10" refX="9" refY="3" '
        f'markerWidth="6" markerHeight="6" orient="auto">\n'
        f'      <path d="M0,0 L0,6 L9,3 z" fill="{DESCENT_COLOR}"/>\n'
        f'    </marker>\n'
        f'  </defs>\n'
        f'  <g transform="translate({_fmt(-min_x)}, {_fmt(-min_y)})">\n'
        f'    {body}\n'
        f'  </g>\n'
        f'</svg>'
    )
