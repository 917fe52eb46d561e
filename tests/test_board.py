"""
Tests for calibstudio.calibration.board.
"""

import numpy as np
import pytest

from calibstudio.calibration.board import (
    ARUCO_DICTIONARIES,
    board_corner_positions,
    corner_id_at,
    corner_object_points,
    create_charuco_board,
)
from calibstudio.errors import MalformedInputError
from calibstudio.types import BoardConfig


class TestBoardConfig:
    def test_corner_counts(self, board):
        assert board.corners_x == 7
        assert board.corners_y == 5
        assert board.corner_count == 35

    def test_immutability(self, board):
        with pytest.raises(AttributeError):
            board.columns = 3


class TestCreateCharucoBoard:
    def test_create_board(self, board):
        charuco = create_charuco_board(board)
        assert charuco is not None

    def test_all_dictionaries_valid(self):
        for dict_name in ARUCO_DICTIONARIES:
            config = BoardConfig(
                columns=4, rows=3, square_length=0.04, marker_length=0.03,
                dictionary=dict_name,
            )
            assert create_charuco_board(config) is not None

    def test_unknown_dictionary(self):
        config = BoardConfig(
            columns=4, rows=3, square_length=0.04, marker_length=0.03,
            dictionary="DICT_NOPE",
        )
        with pytest.raises(MalformedInputError):
            create_charuco_board(config)


class TestCornerMapping:
    def test_bijection(self, board):
        """Every corner ID maps to a distinct grid position."""
        positions = board_corner_positions(board)
        assert positions.shape == (board.corner_count, 3)

        unique = {tuple(np.round(p, 9)) for p in positions}
        assert len(unique) == board.corner_count

    def test_planar(self, board):
        positions = board_corner_positions(board)
        assert np.all(positions[:, 2] == 0)

    def test_row_major(self, board):
        positions = board_corner_positions(board)
        # Corner 1 is one square to the right of corner 0
        np.testing.assert_allclose(positions[1] - positions[0], [0.05, 0.0, 0.0])
        # Corner corners_x starts the next row
        np.testing.assert_allclose(
            positions[board.corners_x] - positions[0], [0.0, 0.05, 0.0]
        )

    def test_matches_opencv(self, board):
        """Layout is identical to CharucoBoard.getChessboardCorners()."""
        expected = create_charuco_board(board).getChessboardCorners()
        np.testing.assert_allclose(
            board_corner_positions(board), expected, atol=1e-6
        )

    def test_deterministic(self, board):
        ids = [4, 0, 17, 34]
        np.testing.assert_array_equal(
            corner_object_points(board, ids), corner_object_points(board, ids)
        )

    def test_subset_order_preserved(self, board):
        ids = [5, 2]
        points = corner_object_points(board, ids)
        all_points = board_corner_positions(board)
        np.testing.assert_array_equal(points, all_points[[5, 2]])

    @pytest.mark.parametrize("bad_id", [-1, 35, 100])
    def test_out_of_range(self, board, bad_id):
        with pytest.raises(MalformedInputError):
            corner_object_points(board, [0, bad_id])

    def test_empty(self, board):
        assert corner_object_points(board, []).shape == (0, 3)

    def test_corner_id_at_inverse(self, board):
        for corner_id in range(board.corner_count):
            col = corner_id % board.corners_x
            row = corner_id // board.corners_x
            assert corner_id_at(board, col, row) == corner_id

    def test_corner_id_at_off_board(self, board):
        with pytest.raises(MalformedInputError):
            corner_id_at(board, board.corners_x, 0)
