from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


SFCGAL_FILES: Dict[str, str] = {
    "CMakeLists.txt": """
        cmake_minimum_required(VERSION 3.10)
        project(SFCGAL)
        set(SFCGAL_VERSION_MAJOR 1)
        set(SFCGAL_VERSION_MINOR 5)
        set(SFCGAL_VERSION_PATCH 2)
        """,
    "src/algorithm/isValid.h": """
        namespace SFCGAL {
        namespace algorithm {
        const double EPSILON = 1e-9;
        auto isValid(const Geometry &g, const double &toleranceAbs = 1e-9) -> const Validity;
        auto isPlane3D(const Geometry &g, const double &toleranceAbs = 1e-9) -> bool;
        } // namespace algorithm
        } // namespace SFCGAL
        """,
    "src/algorithm/isValid.cpp": """
        #include "SFCGAL/algorithm/isValid.h"

        namespace SFCGAL {
        namespace algorithm {

        auto isValid(const Polygon &polygon, const double &toleranceAbs) -> const Validity
        {
          for (size_t ring = 0; ring != polygon.numRings(); ++ring) {
            if (selfIntersects3D(polygon.ringN(ring))) {
              return Validity::invalid("ring self intersects");
            }
          }
          return Validity::valid();
        }

        auto isValid(const PolyhedralSurface &polyhedralsurface, const SurfaceGraph &graph,
                     const double &toleranceAbs) -> const Validity
        {
          if (selfIntersects3D(polyhedralsurface, graph)) {
            return Validity::invalid("PolyhedralSurface self intersects");
          }
          return Validity::valid();
        }

        auto isValid(const TriangulatedSurface &triangulatedsurface, const SurfaceGraph &graph,
                     const double &toleranceAbs) -> const Validity
        {
          if (selfIntersects3D(triangulatedsurface, graph)) {
            return Validity::invalid("TriangulatedSurface self intersects");
          }
          return Validity::valid();
        }

        } // namespace algorithm
        } // namespace SFCGAL
        """,
    "src/triangulate/triangulatePolygon.cpp": """
        void triangulatePolygon3D(const Geometry &g, TriangulatedSurface &triangulatedSurface)
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY(g);
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_ON_PLANE(g.as<Polygon>());
          triangulate(g, triangulatedSurface);
        }
        """,
    "src/algorithm/volume.cpp": """
        auto volume(const Solid &solid, NoValidityCheck /*unused*/) -> const Kernel::FT
        {
          return volumeOf(solid);
        }

        auto volume(const Geometry &g) -> const Kernel::FT
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY(g);
          return volume(g, NoValidityCheck());
        }
        """,
    "src/algorithm/area.cpp": """
        auto area(const Geometry &g) -> double
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_2D(g);
          return area(g, NoValidityCheck());
        }

        auto area3D(const Geometry &g) -> double
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_3D(g);
          return area3D(g, NoValidityCheck());
        }
        """,
    "src/algorithm/distance3d.cpp": """
        auto distance3D(const Geometry &gA, const Geometry &gB) -> double
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_3D(gA);
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_3D(gB.geometryN(std::min(index(gA), size_t(0))));
          return distance3D(gA, gB, NoValidityCheck());
        }
        """,
    "src/algorithm/intersects.cpp": """
        auto intersects(const Geometry &ga, const Geometry &gb) -> bool
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY(
              ga);
          SFCGAL_ASSERT_GEOMETRY_VALIDITY(gb);
          return intersects(ga, gb, NoValidityCheck());
        }
        """,
    "src/detail/tools/Log.cpp": """
        void Logger::log(const Level &level, const std::string &message)
        {
          *_out << message << std::endl;
        }
        """,
}


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Materialise ``files`` (relative path -> dedented content) under ``root``."""

    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
    return root


@dataclass(slots=True)
class SfcgalTree:
    """Miniature SFCGAL checkout used by the pipeline tests."""

    root: Path

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")

    def write(self, relative: str, content: str) -> None:
        write_tree(self.root, {relative: content})

    def snapshot(self) -> Dict[str, str]:
        return {
            path.relative_to(self.root).as_posix(): path.read_text(encoding="utf-8")
            for path in sorted(self.root.rglob("*"))
            if path.is_file()
        }


@pytest.fixture()
def sfcgal_tree(tmp_path: Path) -> SfcgalTree:
    """Create a tiny source tree shaped like an SFCGAL 1.5 checkout."""

    root = tmp_path / "SFCGAL"
    root.mkdir()
    write_tree(root, SFCGAL_FILES)
    return SfcgalTree(root=root)


@pytest.fixture()
def make_sfcgal_tree(tmp_path: Path) -> Callable[[str], SfcgalTree]:
    """Return a factory building independent SFCGAL-shaped trees under ``tmp_path``."""

    def factory(name: str) -> SfcgalTree:
        root = tmp_path / name
        root.mkdir()
        write_tree(root, SFCGAL_FILES)
        return SfcgalTree(root=root)

    return factory
