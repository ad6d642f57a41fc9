import pytest

from lifescribe.connections import (
    CARD_WIDTH, CARD_HEIGHT, DROP_LENGTH, CANVAS_PADDING,
    MARRIAGE_COLOR, MARRIAGE_HIGHLIGHT, DESCENT_COLOR, DESCENT_HIGHLIGHT,
    group_family_units, individual_relationships, family_unit_elements,
    relationship_element, canvas_bounds, build_connections, render_svg
)


def rel(rel_id, from_id, to_id, kind):
    return {'id': rel_id, 'from_person_id': from_id, 'to_person_id': to_id, 'relationship_type': kind}


FAMILY = [
    rel(1, 'a', 'b', 'spouse'),
    rel(2, 'a', 'c', 'parent'),
    rel(3, 'b', 'c', 'parent'),
    rel(4, 'a', 'd', 'parent'),
]

POSITIONS = {
    'a': {'x': 0, 'y': 0},
    'b': {'x': 400, 'y': 0},
    'c': {'x': 0, 'y': 400},
    'd': {'x': 400, 'y': 400},
}


def by_kind(elements, kind):
    return [e for e in elements if e['kind'] == kind]


class TestGrouping:
    def test_couple_with_children_forms_one_unit(self):
        units = group_family_units(FAMILY)

        assert len(units) == 1
        unit = units[0]
        assert unit.parents == ('a', 'b')
        assert unit.children == ['c', 'd']
        assert [r['id'] for r in unit.marriage_relationships] == ['1']
        assert sorted(r['id'] for r in unit.parent_child_relationships) == ['2', '3', '4']

    def test_reciprocal_spouse_edge_joins_the_unit(self):
        rels = FAMILY + [rel(5, 'b', 'a', 'spouse')]

        units = group_family_units(rels)

        assert len(units) == 1
        assert [r['id'] for r in units[0].marriage_relationships] == ['1', '5']
        assert individual_relationships(rels, units) == []

    def test_reciprocal_spouse_edges_of_childless_couple_render_once(self):
        rels = [rel(1, 'a', 'b', 'spouse'), rel(2, 'b', 'a', 'spouse')]

        units = group_family_units(rels)

        assert [r['id'] for r in individual_relationships(rels, units)] == ['1']

    def test_childless_couple_is_left_to_the_edge_renderer(self):
        rels = [rel(1, 'a', 'b', 'spouse')]

        units = group_family_units(rels)

        assert units == []
        assert [r['id'] for r in individual_relationships(rels, units)] == ['1']

    def test_absorbed_edges_are_not_rendered_individually(self):
        rels = FAMILY + [rel(9, 'x', 'c', 'parent')]

        units = group_family_units(rels)
        leftovers = individual_relationships(rels, units)

        assert [r['id'] for r in leftovers] == ['9']

    def test_integer_ids_are_normalized(self):
        rels = [rel(1, 10, 11, 'spouse'), rel(2, 10, 12, 'parent')]

        units = group_family_units(rels)

        assert units[0].parents == ('10', '11')
        assert units[0].children == ['12']


class TestFamilyUnitElements:
    def test_geometry(self):
        unit = group_family_units(FAMILY)[0]

        elements = family_unit_elements(unit, POSITIONS)

        marriage = by_kind(elements, 'marriage')[0]
        assert (marriage['x1'], marriage['x2']) == (CARD_WIDTH, 400)
        assert marriage['y1'] == marriage['y2'] == CARD_HEIGHT / 2
        assert marriage['dashed'] is True

        drop = by_kind(elements, 'drop')[0]
        joint_x = (CARD_WIDTH + 400) / 2
        assert drop['x1'] == drop['x2'] == joint_x
        assert drop['y2'] - drop['y1'] == DROP_LENGTH

        spread = by_kind(elements, 'spread')[0]
        assert spread['x1'] == CARD_WIDTH / 2
        assert spread['x2'] == 400 + CARD_WIDTH / 2

        children = by_kind(elements, 'child')
        assert [c['child'] for c in children] == ['c', 'd']
        assert all(c['y2'] == 400 and c['arrow'] for c in children)

    def test_parent_order_does_not_matter(self):
        unit = group_family_units([rel(1, 'b', 'a', 'spouse'), rel(2, 'a', 'c', 'parent')])[0]

        marriage = by_kind(family_unit_elements(unit, POSITIONS), 'marriage')[0]

        assert marriage['x1'] == CARD_WIDTH
        assert marriage['x2'] == 400

    def test_single_child_has_no_spread_line(self):
        unit = group_family_units(FAMILY[:3])[0]

        elements = family_unit_elements(unit, POSITIONS)

        assert by_kind(elements, 'spread') == []
        assert len(by_kind(elements, 'child')) == 1

    def test_missing_parent_position_skips_unit(self):
        unit = group_family_units(FAMILY)[0]
        positions = {k: v for k, v in POSITIONS.items() if k != 'b'}

        assert family_unit_elements(unit, positions) is None

    def test_unpositioned_children_are_dropped(self):
        unit = group_family_units(FAMILY)[0]
        positions = {k: v for k, v in POSITIONS.items() if k != 'd'}

        elements = family_unit_elements(unit, positions)

        assert [c['child'] for c in by_kind(elements, 'child')] == ['c']
        assert by_kind(elements, 'spread') == []

    def test_selected_member_highlights_the_unit(self):
        unit = group_family_units(FAMILY)[0]

        elements = family_unit_elements(unit, POSITIONS, selected_person_id='d')

        assert by_kind(elements, 'marriage')[0]['stroke'] == MARRIAGE_HIGHLIGHT
        assert all(e['stroke_width'] == 3 for e in elements)
        assert by_kind(elements, 'drop')[0]['stroke'] == DESCENT_HIGHLIGHT


class TestRelationshipElement:
    def test_parent_above_child_draws_downwards(self):
        element = relationship_element(rel(7, 'a', 'c', 'parent'), POSITIONS)

        assert element['tag'] == 'path'
        mid = CARD_HEIGHT + (400 - CARD_HEIGHT) / 2
        assert element['d'] == f'M 132 160 L 132 {mid:g} L 132 {mid:g} L 132 400'
        assert element['stroke'] == DESCENT_COLOR

    def test_parent_below_child_draws_upwards(self):
        element = relationship_element(rel(7, 'c', 'a', 'parent'), POSITIONS)

        assert element['d'].startswith('M 132 400 ')
        assert element['d'].endswith('L 132 160')

    def test_spouse_line_between_facing_edges(self):
        element = relationship_element(rel(8, 'b', 'a', 'spouse'), POSITIONS, selected_person_id='a')

        assert (element['x1'], element['x2']) == (400, CARD_WIDTH)
        assert element['dashed'] is True
        assert element['stroke'] == MARRIAGE_HIGHLIGHT
        assert element['stroke_width'] == 3

    def test_child_edges_and_missing_positions_are_skipped(self):
        assert relationship_element(rel(1, 'a', 'c', 'child'), POSITIONS) is None
        assert relationship_element(rel(1, 'a', 'zz', 'parent'), POSITIONS) is None


def test_canvas_bounds():
    assert canvas_bounds({}) is None
    assert canvas_bounds(POSITIONS) == (
        -CANVAS_PADDING, -CANVAS_PADDING,
        400 + CARD_WIDTH + CANVAS_PADDING, 400 + CARD_HEIGHT + CANVAS_PADDING
    )


def test_build_connections_ignores_people_outside_the_tree():
    rels = FAMILY + [rel(9, 'a', 'stranger', 'parent')]

    result = build_connections(rels, POSITIONS, people=[{'id': p} for p in 'abcd'])

    assert len(result['family_units']) == 1
    assert all(e.get('relationship_id') != '9' for e in result['elements'])
    marriages = by_kind(result['elements'], 'marriage')
    assert len(marriages) == 1
    assert marriages[0]['stroke'] == MARRIAGE_COLOR


@pytest.mark.parametrize('extra', [[], [rel(3, 'a', 'c', 'parent')]])
def test_marriage_drawn_once_when_spouse_edges_go_both_ways(extra):
    rels = [rel(1, 'a', 'b', 'spouse'), rel(2, 'b', 'a', 'spouse')] + extra

    elements = build_connections(rels, POSITIONS)['elements']

    marriage_lines = [e for e in elements if e['kind'] in ('marriage', 'spouse')]
    assert len(marriage_lines) == 1


def test_render_svg():
    svg = render_svg(FAMILY, POSITIONS)

    assert svg.startswith('<svg')
    assert 'id="arrow-parent"' in svg
    assert 'translate(100, 100)' in svg
    assert svg.count('<line') == 5  # marriage, drop, spread, two children
    assert render_svg(FAMILY, {}) is None
