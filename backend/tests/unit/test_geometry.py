import pytest
from shapely.geometry import Point, Polygon
from shapely.validation import make_valid

from sitemaps.errors import GeometryError
from sitemaps.geometry import (
    clean_ring,
    feature_count,
    group_by_feature,
    normalize_shapes,
    to_polygon,
    visual_center,
)

SQUARE = [[151.0, -33.0], [151.01, -33.0], [151.01, -33.01], [151.0, -33.01], [151.0, -33.0]]
U_SHAPE = [
    [0.0, 0.0], [3.0, 0.0], [3.0, 3.0], [2.0, 3.0], [2.0, 1.0],
    [1.0, 1.0], [1.0, 3.0], [0.0, 3.0], [0.0, 0.0],
]


class TestCleanRing:

    def test_drops_closing_vertex(self):
        ring = clean_ring(SQUARE)
        assert len(ring) == 4
        assert ring[0] != ring[-1]

    def test_skips_bad_coordinates(self):
        ring = clean_ring([[0, 0], ["x", 1], [1, 0], None, [1, 1], [float("nan"), 2]])
        assert ring == [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0)]

    def test_needs_three_distinct_vertices(self):
        assert clean_ring([[0, 0], [1, 1], [0, 0]]) is None
        assert clean_ring("not a ring") is None


class TestNormalizeShapes:

    def test_feature_polygon(self):
        shapes = normalize_shapes({"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [SQUARE]}})
        assert len(shapes) == 1
        assert shapes[0].kind == "polygon"
        assert shapes[0].feature_index == 0

    def test_multipolygon_keeps_holes(self):
        hole = [[151.002, -33.002], [151.004, -33.002], [151.004, -33.004], [151.002, -33.004]]
        geometry = {"type": "MultiPolygon", "coordinates": [[SQUARE, hole], [SQUARE]]}
        shapes = normalize_shapes(geometry)
        assert len(shapes) == 2
        assert len(shapes[0].holes) == 1
        assert shapes[1].holes == []

    def test_feature_collection_tags_feature_index(self):
        collection = {
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [SQUARE]}, "properties": {"n": 1}},
                {"type": "Feature", "geometry": None},
                {"type": "Feature", "geometry": {"type": "MultiPolygon", "coordinates": [[SQUARE], [SQUARE]]}},
            ],
        }
        shapes = normalize_shapes(collection)
        grouped = group_by_feature(shapes)

        assert sorted(grouped) == [0, 2]
        assert len(grouped[2]) == 2
        assert shapes[0].properties == {"n": 1}
        assert feature_count(collection) == 3

    def test_bare_ring_and_points(self):
        assert normalize_shapes(SQUARE)[0].kind == "polygon"
        point = normalize_shapes({"type": "Point", "coordinates": [151.0, -33.0]})
        assert point[0].kind == "point"
        assert point[0].exterior == [(151.0, -33.0)]

    def test_geometry_collection(self):
        geometry = {
            "type": "GeometryCollection",
            "geometries": [
                {"type": "Polygon", "coordinates": [SQUARE]},
                {"type": "Point", "coordinates": [151.0, -33.0]},
            ],
        }
        assert [shape.kind for shape in normalize_shapes(geometry)] == ["polygon", "point"]

    @pytest.mark.parametrize("value", [None, 42, "text", {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}])
    def test_nothing_drawable(self, value):
        assert normalize_shapes(value) == []


class TestVisualCenter:

    def test_square_center(self):
        center = visual_center([clean_ring(SQUARE)])
        assert center[0] == pytest.approx(151.005, abs=1e-3)
        assert center[1] == pytest.approx(-33.005, abs=1e-3)

    def test_concave_polygon_anchor_is_inside(self):
        polygon = Polygon(U_SHAPE)
        center = visual_center([clean_ring(U_SHAPE)])
        assert center is not None
        point = Point(center)
        assert polygon.contains(point)
        assert polygon.boundary.distance(point) > 0

    def test_self_intersecting_polygon_still_inside(self):
        bowtie = [[0.0, 0.0], [2.0, 2.0], [2.0, 0.0], [0.0, 2.0]]
        center = visual_center([bowtie])
        assert center is not None
        assert make_valid(Polygon(bowtie)).contains(Point(center))

    def test_degenerate_polygon_returns_none(self):
        assert visual_center([[(0.0, 0.0), (1.0, 1.0), (2.0, 2.0)]]) is None
        assert visual_center([]) is None


class TestToPolygon:

    def test_holes_are_interiors(self):
        hole = [[0.5, 0.5], [1.0, 0.5], [1.0, 1.0], [0.5, 1.0]]
        polygon = to_polygon([[(0.0, 0.0), (2.0, 0.0), (2.0, 2.0), (0.0, 2.0)], hole])
        assert polygon.area == pytest.approx(4.0 - 0.25)

    @pytest.mark.parametrize("rings", [[], [[(0.0, 0.0), (1.0, 1.0)]]])
    def test_unusable_rings(self, rings):
        with pytest.raises(GeometryError):
            to_polygon(rings)
