"""
ChArUco board model.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..errors import MalformedInputError
from ..types import BoardConfig


# ============================================================================
# ArUco Dictionary Reference
# ============================================================================

ARUCO_DICTIONARIES = {
    "DICT_4X4_50": cv2.aruco.DICT_4X4_50,
    "DICT_4X4_100": cv2.aruco.DICT_4X4_100,
    "DICT_4X4_250": cv2.aruco.DICT_4X4_250,
    "DICT_4X4_1000": cv2.aruco.DICT_4X4_1000,
    "DICT_5X5_50": cv2.aruco.DICT_5X5_50,
    "DICT_5X5_100": cv2.aruco.DICT_5X5_100,
    "DICT_5X5_250": cv2.aruco.DICT_5X5_250,
    "DICT_5X5_1000": cv2.aruco.DICT_5X5_1000,
    "DICT_6X6_50": cv2.aruco.DICT_6X6_50,
    "DICT_6X6_100": cv2.aruco.DICT_6X6_100,
    "DICT_6X6_250": cv2.aruco.DICT_6X6_250,
    "DICT_6X6_1000": cv2.aruco.DICT_6X6_1000,
}


# ============================================================================
# Board Creation
# ============================================================================


def create_charuco_board(config: BoardConfig) -> cv2.aruco.CharucoBoard:
    """
    Create an OpenCV CharucoBoard from configuration.

    Raises:
        MalformedInputError: If the dictionary name is unknown
    """
    if config.dictionary not in ARUCO_DICTIONARIES:
        raise MalformedInputError(f"Unknown dictionary: {config.dictionary}")

    dictionary = cv2.aruco.getPredefinedDictionary(ARUCO_DICTIONARIES[config.dictionary])

    board = cv2.aruco.CharucoBoard(
        size=(config.columns, config.rows),
        squareLength=config.square_length,
        markerLength=config.marker_length,
        dictionary=dictionary,
    )
    board.setLegacyPattern(config.legacy_pattern)

    return board


# ============================================================================
# Corner Geometry
# ============================================================================


def corner_object_points(config: BoardConfig, corner_ids) -> np.ndarray:
    """
    Board-plane positions of the given corner IDs.

    Corners are numbered row-major over the interior grid intersections,
    matching CharucoBoard.getChessboardCorners().

    Args:
        config: BoardConfig
        corner_ids: Iterable of integer corner IDs

    Returns:
        (n, 3) float64 array, z = 0

    Raises:
        MalformedInputError: If an ID is outside the board
    """
    ids = np.asarray(corner_ids, dtype=np.int64).reshape(-1)
    if ids.size and (ids.min() < 0 or ids.max() >= config.corner_count):
        raise MalformedInputError(
            f"Corner id out of range for {config.columns}x{config.rows} board"
        )

    col = ids % config.corners_x
    row = ids // config.corners_x

    points = np.zeros((ids.size, 3), dtype=np.float64)
    points[:, 0] = (col + 1) * config.square_length
    points[:, 1] = (row + 1) * config.square_length
    return points


def board_corner_positions(config: BoardConfig) -> np.ndarray:
    """
    Positions of every corner on the board, indexed by corner ID.
    """
    return corner_object_points(config, np.arange(config.corner_count))


def corner_id_at(config: BoardConfig, col: int, row: int) -> int:
    """Inverse of the corner layout: grid position -> corner ID."""
    if not (0 <= col < config.corners_x and 0 <= row < config.corners_y):
        raise MalformedInputError(f"Grid position ({col}, {row}) is off the board")
    return row * config.corners_x + col
