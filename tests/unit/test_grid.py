"""Unit tests for GridConfig, VoxelGrid and NeighborhoodField."""

import numpy as np
import pytest

from mplcore.core.grid import GridConfig, NeighborhoodField, VoxelGrid, layer_id, layer_index


class TestGridConfig:
    """Tests for GridConfig."""

    def test_default_config(self):
        cfg = GridConfig(nx=16, ny=8)
        assert cfg.nz == 1
        assert cfg.max_layers == 8
        assert cfg.full_intensity == 255
        assert cfg.size == (16, 8, 1)

    def test_rejects_empty_dimensions(self):
        with pytest.raises(ValueError):
            GridConfig(nx=0, ny=4)

    def test_rejects_oversized_intensity(self):
        with pytest.raises(ValueError):
            GridConfig(nx=4, ny=4, full_intensity=300)


class TestVoxelGrid:
    """Tests for VoxelGrid storage."""

    def test_creation(self):
        grid = VoxelGrid(GridConfig(nx=4, ny=3, nz=2))
        assert grid.shape == (2, 3, 4)
        assert grid.size == (4, 3, 2)
        assert grid.layer_indices == [0]
        assert grid.layer().dtype == np.uint8
        assert not grid.layer().any()

    def test_index_formula(self):
        grid = VoxelGrid(GridConfig(nx=4, ny=3, nz=2))
        assert grid.index(1, 2, 1) == 1 + 2 * 4 + 1 * 4 * 3
        grid.set(1, 2, 1)
        flat = np.frombuffer(grid.layer().tobytes(), dtype=np.uint8)
        assert flat[grid.index(1, 2, 1)] == 255
        assert flat.sum() == 255

    def test_set_out_of_bounds_is_noop(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3))
        version = grid.version
        assert grid.set(3, 0) is False
        assert grid.set(0, -1) is False
        assert grid.set(0, 0, 1) is False
        assert not grid.layer().any()
        assert grid.version == version

    def test_get_out_of_bounds_is_zero(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3))
        assert grid.get(-1, 0) == 0

    def test_version_bumps_on_mutation(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3))
        v0 = grid.version
        grid.set(1, 1)
        grid.clear()
        assert grid.version == v0 + 2

    def test_layer_view_is_read_only(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3))
        with pytest.raises(ValueError):
            grid.layer()[0, 0, 0] = 1

    def test_select_layer_creates_on_demand(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3, max_layers=2))
        assert grid.select_layer(1)
        assert grid.layer_indices == [0, 1]
        assert not grid.select_layer(2)
        assert grid.active_layer == 1

    def test_clear_only_active_layer(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3))
        grid.set(0, 0)
        grid.select_layer(1)
        grid.set(0, 0)
        grid.clear()
        assert grid.get(0, 0, layer=0) == 255
        assert grid.get(0, 0, layer=1) == 0

    def test_reset(self):
        grid = VoxelGrid(GridConfig(nx=3, ny=3))
        grid.select_layer(2)
        grid.set(1, 1)
        grid.commit_tick(None)
        grid.reset()
        assert grid.layer_indices == [0]
        assert grid.active_layer == 0
        assert grid.step_count == 0
        assert not grid.layer().any()

    def test_commit_tick_swaps_and_steps(self):
        grid = VoxelGrid(GridConfig(nx=2, ny=2))
        buffer = np.full(grid.shape, 7, dtype=np.uint8)
        assert grid.commit_tick({0: buffer}) == 1
        assert grid.get(1, 1) == 7

    def test_commit_tick_rejects_wrong_shape(self):
        grid = VoxelGrid(GridConfig(nx=2, ny=2))
        with pytest.raises(ValueError):
            grid.commit_tick({0: np.zeros((1, 3, 3), dtype=np.uint8)})
        assert grid.step_count == 0

    def test_iter_voxels_order(self):
        grid = VoxelGrid(GridConfig(nx=2, ny=2, nz=2))
        order = list(grid.iter_voxels())
        assert order[:3] == [(0, 0, 0), (1, 0, 0), (0, 1, 0)]
        assert [grid.index(*p) for p in order] == list(range(8))

    def test_copy_channels_is_detached(self):
        grid = VoxelGrid(GridConfig(nx=2, ny=1))
        _, _, channels = grid.copy_channels()
        grid.set(0, 0)
        assert channels[0] == b"\x00\x00"


class TestLayerIds:
    """Tests for layer id helpers."""

    def test_round_trip(self):
        assert layer_id(3) == "layer-3"
        assert layer_index("layer-3") == 3

    def test_foreign_id(self):
        with pytest.raises(ValueError):
            layer_index("background")


class TestNeighborhoodField:
    """Tests for the 26-cell Moore aggregates."""

    def test_single_cell_in_3d(self):
        buffer = np.zeros((3, 3, 3), dtype=np.uint8)
        buffer[1, 1, 1] = 255
        field = NeighborhoodField(buffer)
        # Every other cell sees the centre exactly once
        assert field.alive[1, 1, 1] == 0
        assert (field.alive[buffer == 0] == 1).all()
        assert field.total[0, 0, 0] == 255

    def test_full_cube_centre_has_26(self):
        buffer = np.full((3, 3, 3), 10, dtype=np.uint8)
        field = NeighborhoodField(buffer)
        assert field.alive[1, 1, 1] == 26
        assert field.total[1, 1, 1] == 260

    def test_boundary_padding_is_zero(self):
        buffer = np.full((1, 3, 3), 5, dtype=np.uint8)
        field = NeighborhoodField(buffer)
        # Corner of a flat grid: 3 in-plane neighbours, everything else padding
        assert field.alive[0, 0, 0] == 3
        assert field.minimum[0, 0, 0] == 0
        assert field.maximum[0, 0, 0] == 5

    def test_max_excludes_centre(self):
        buffer = np.zeros((1, 3, 3), dtype=np.uint8)
        buffer[0, 1, 1] = 200
        buffer[0, 0, 0] = 9
        field = NeighborhoodField(buffer)
        assert field.maximum[0, 1, 1] == 9
        assert field.maximum[0, 0, 1] == 200

    def test_sum_does_not_overflow(self):
        buffer = np.full((3, 3, 3), 255, dtype=np.uint8)
        field = NeighborhoodField(buffer)
        assert field.total[1, 1, 1] == 26 * 255
