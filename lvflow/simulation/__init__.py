"""Regulation equipment simulation -- SRG2 regulators, EQUI8 compensators,
forced-mode calibration and the shared convergence controller."""
