"""Molecular volume from overlapping atomic Gaussians (GaussVol).

Each atom is represented by a Gaussian density g(r) = v·(a/π)^{3/2}·exp(-a|r-c|²)
whose integral is the atomic volume v, with a = KFC / radius². The volume of
the union of atoms is expanded by inclusion-exclusion over N-way overlaps:

    V = Σᵢ Vᵢ - Σᵢ<ⱼ Vᵢⱼ + Σᵢ<ⱼ<ₖ Vᵢⱼₖ - ...

The product of two Gaussians is again a Gaussian, so every N-way overlap is a
Gaussian too. Overlaps are stored in a tree: level 1 holds the atoms, and the
children of a node are its overlaps with the atoms of its later siblings.
Nodes live in one flat list (an arena) and refer to their parent and to a
contiguous range of children by index.

Overlaps below ``min_overlap_volume`` are pruned and a smooth switching
function turns tiny overlaps off, so the tree stays small and the energy
stays differentiable. Depth is capped at MAX_ORDER.

A single post-order pass over the tree accumulates the total volume, per-atom
free and self volumes, the energy Σ γ·V and its analytic gradients with
respect to atomic positions and atomic volumes.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import NamedTuple

import torch

from .device import DTYPE


logger = logging.getLogger(__name__)

KFC = 2.2269859253
MAX_ORDER = 8
ANG3 = 0.001
# Overlaps are switched off smoothly between these two volumes.
VOLMINA = 0.01 * ANG3
VOLMINB = 0.1 * ANG3
# Smallest positive double.
MIN_GVOL = 5e-324


class GeometryMismatchError(ValueError):
    """Raised when a per-atom array does not match the number of atoms."""


@dataclass
class GaussianVca:
    """Gaussian with integrated volume v, exponent a and center c."""
    v: float
    a: float
    c: torch.Tensor


def _zeros3() -> torch.Tensor:
    return torch.zeros(3, dtype=DTYPE)


@dataclass
class GaussianOverlap:
    """One node of the overlap tree.

    ``volume`` is the switched overlap volume. ``dv1`` is the gradient of the
    overlap volume with respect to the position of the last atom added,
    ``dvv1`` its derivative with respect to the parent volume and ``sfp`` the
    derivative of the switched volume with respect to the raw one.
    """
    level: int
    g: GaussianVca
    volume: float
    atom: int
    parent_index: int = -1
    children_start_index: int = -1
    children_count: int = -1
    dv1: torch.Tensor = field(default_factory=_zeros3)
    dvv1: float = 0.0
    sfp: float = 1.0
    gamma1i: float = 0.0
    self_volume: float = 0.0


def pol_switch(gvol: float, volmina: float = VOLMINA, volminb: float = VOLMINB) -> tuple[float, float]:
    """Quintic switch from 0 at volmina to 1 at volminb. Returns (s, ds/dgvol)."""
    if gvol > volminb:
        return 1.0, 0.0
    if gvol < volmina:
        return 0.0, 0.0
    swd = 1.0 / (volminb - volmina)
    swu = (gvol - volmina) * swd
    swu2 = swu * swu
    swu3 = swu * swu2
    s = swu3 * (10.0 - 15.0 * swu + 6.0 * swu2)
    sp = swd * 30.0 * swu2 * (1.0 - 2.0 * swu + swu2)
    return s, sp


def ogauss_alpha(g1: GaussianVca, g2: GaussianVca) -> tuple[float, GaussianVca, float, float, float]:
    """Overlap of two Gaussians.

    Returns:
        (switched volume, overlap Gaussian g12, (1/r)·dV/dr, dV/dV1,
        switching factor sfp)
    """
    dist = g2.c - g1.c
    d2 = torch.dot(dist, dist).item()
    a12 = g1.a + g2.a
    deltai = 1.0 / a12
    df = g1.a * g2.a * deltai
    gvol = (g1.v * g2.v) / (math.pi / df) ** 1.5 * math.exp(-df * d2)
    dgvol = -2.0 * df * gvol
    dgvolv = gvol / g1.v if g1.v > 0 else 0.0
    g12 = GaussianVca(v=gvol, a=a12, c=(g1.c * g1.a + g2.c * g2.a) * deltai)
    s, sp = pol_switch(gvol)
    sfp = sp * gvol + s
    return s * gvol, g12, dgvol, dgvolv, sfp


class _SlotSums(NamedTuple):
    psi: float
    f: float
    p: torch.Tensor
    psip: float
    fp: float
    pp: torch.Tensor
    energy: float
    fenergy: float
    penergy: torch.Tensor


class VolumeResult(NamedTuple):
    volume: float
    energy: float
    gradient: torch.Tensor
    volume_gradient: torch.Tensor
    free_volume: torch.Tensor
    self_volume: torch.Tensor


class GaussianOverlapTree:
    """Arena-backed tree of atomic Gaussian overlaps.

    Slot 0 is a root with all atoms as children; slots 1..n_atoms are the atoms.
    """

    def __init__(self, n_atoms: int, min_overlap_volume: float = MIN_GVOL):
        self.n_atoms = n_atoms
        self.min_overlap_volume = min_overlap_volume
        self.overlaps: list[GaussianOverlap] = []

    def _reset_root_and_atoms(self, positions, radii, volumes, gammas, is_hydrogen):
        root = self.overlaps[0]
        root.level = 0
        root.volume = 0.0
        root.dv1 = _zeros3()
        root.dvv1 = 0.0
        root.self_volume = 0.0
        root.sfp = 1.0
        root.gamma1i = 0.0
        for iat in range(self.n_atoms):
            ov = self.overlaps[iat + 1]
            vol = 0.0 if is_hydrogen[iat] else float(volumes[iat])
            ov.level = 1
            ov.g = GaussianVca(v=vol, a=KFC / float(radii[iat]) ** 2, c=positions[iat])
            ov.volume = vol
            ov.dv1 = _zeros3()
            ov.dvv1 = 1.0
            ov.self_volume = 0.0
            ov.sfp = 1.0
            ov.gamma1i = float(gammas[iat])

    def init_overlap_tree(self, positions, radii, volumes, gammas, is_hydrogen):
        root = GaussianOverlap(level=0, g=GaussianVca(0.0, 0.0, _zeros3()), volume=0.0, atom=-1,
                               parent_index=-1, children_start_index=1,
                               children_count=self.n_atoms)
        self.overlaps = [root]
        for iat in range(self.n_atoms):
            self.overlaps.append(GaussianOverlap(level=1, g=GaussianVca(0.0, 0.0, _zeros3()),
                                                 volume=0.0, atom=iat, parent_index=0))
        self._reset_root_and_atoms(positions, radii, volumes, gammas, is_hydrogen)

    def add_children(self, parent_index: int, children: list[GaussianOverlap]) -> int:
        """Append children to the arena and register them with their parent."""
        start_index = len(self.overlaps)
        parent = self.overlaps[parent_index]
        parent.children_start_index = start_index
        parent.children_count = len(children)
        for child in children:
            child.level = parent.level + 1
            child.parent_index = parent_index
            child.children_start_index = -1
            child.children_count = -1
            self.overlaps.append(child)
        return start_index

    def compute_children(self, root_index: int) -> list[GaussianOverlap]:
        """Overlaps of a node with the atoms of every later sibling."""
        root = self.overlaps[root_index]
        if root.parent_index < 0 or root.level >= MAX_ORDER:
            return []
        parent = self.overlaps[root.parent_index]
        sibling_end = parent.children_start_index + parent.children_count
        children = []
        for slot_j in range(root_index + 1, sibling_end):
            atom2 = self.overlaps[slot_j].atom
            g2 = self.overlaps[atom2 + 1].g
            gvol, g12, dVdr, dVdV, sfp = ogauss_alpha(root.g, g2)
            if gvol > self.min_overlap_volume:
                children.append(GaussianOverlap(
                    level=root.level + 1, g=g12, volume=gvol, atom=atom2,
                    dv1=(g2.c - root.g.c) * (-dVdr), dvv1=dVdV, sfp=sfp,
                    gamma1i=root.gamma1i + self.overlaps[atom2 + 1].gamma1i))
        return children

    def compute_and_add_children_r(self, root_index: int):
        children = self.compute_children(root_index)
        if children:
            start = self.add_children(root_index, children)
            for child in range(start, start + len(children)):
                self.compute_and_add_children_r(child)

    def compute_overlap_tree_r(self, positions, radii, volumes, gammas, is_hydrogen):
        """Build the tree from scratch."""
        self.init_overlap_tree(positions, radii, volumes, gammas, is_hydrogen)
        for slot in range(1, self.n_atoms + 1):
            self.compute_and_add_children_r(slot)

    def compute_volume_under_slot_2r(self, slot: int, dr: torch.Tensor, dv: torch.Tensor,
                                     free_volume: torch.Tensor, self_volume: torch.Tensor) -> _SlotSums:
        """Post-order accumulation of volumes, energy and gradients below slot."""
        ov = self.overlaps[slot]
        cf = -1.0 if ov.level % 2 == 0 else 1.0
        volcoeff = cf if ov.level > 0 else 0.0
        volcoeffp = volcoeff / ov.level if ov.level > 0 else 0.0

        psi = volcoeff * ov.volume
        f = volcoeff * ov.sfp
        psip = volcoeffp * ov.volume
        fp = volcoeffp * ov.sfp
        energy = volcoeffp * ov.gamma1i * ov.volume
        fenergy = volcoeffp * ov.sfp * ov.gamma1i
        p = _zeros3()
        pp = _zeros3()
        penergy = _zeros3()

        if ov.children_start_index >= 0:
            for child in range(ov.children_start_index, ov.children_start_index + ov.children_count):
                sums = self.compute_volume_under_slot_2r(child, dr, dv, free_volume, self_volume)
                psi += sums.psi
                f += sums.f
                p = p + sums.p
                psip += sums.psip
                fp += sums.fp
                pp = pp + sums.pp
                energy += sums.energy
                fenergy += sums.fenergy
                penergy = penergy + sums.penergy

        if ov.level > 0:
            atom = ov.atom
            ai = self.overlaps[atom + 1].g.a
            a1i = ov.g.a
            free_volume[atom] += psi
            self_volume[atom] += psip
            dr[atom] += penergy * (ai / a1i) - ov.dv1 * fenergy
            dv[atom] += ov.g.v * fenergy

            c2 = (a1i - ai) / a1i
            p = ov.dv1 * f + p * c2
            pp = ov.dv1 * fp + pp * c2
            penergy = ov.dv1 * fenergy + penergy * c2

            f = ov.dvv1 * f
            fp = ov.dvv1 * fp
            fenergy = ov.dvv1 * fenergy

        return _SlotSums(psi, f, p, psip, fp, pp, energy, fenergy, penergy)

    def compute_volume_2r(self) -> VolumeResult:
        n = self.n_atoms
        dr = torch.zeros(n, 3, dtype=DTYPE)
        dv = torch.zeros(n, dtype=DTYPE)
        free_volume = torch.zeros(n, dtype=DTYPE)
        self_volume = torch.zeros(n, dtype=DTYPE)
        sums = self.compute_volume_under_slot_2r(0, dr, dv, free_volume, self_volume)
        return VolumeResult(sums.psi, sums.energy, dr, dv, free_volume, self_volume)

    def rescan_r(self, slot: int):
        """Recompute overlaps below slot from their parents, keeping the topology."""
        ov = self.overlaps[slot]
        if ov.parent_index > 0:
            parent = self.overlaps[ov.parent_index]
            g2 = self.overlaps[ov.atom + 1].g
            gvol, g12, dVdr, dVdV, sfp = ogauss_alpha(parent.g, g2)
            ov.g = g12
            ov.volume = gvol
            ov.dv1 = (g2.c - parent.g.c) * (-dVdr)
            ov.dvv1 = dVdV
            ov.sfp = sfp
            ov.gamma1i = parent.gamma1i + self.overlaps[ov.atom + 1].gamma1i
        for child in range(ov.children_start_index, ov.children_start_index + ov.children_count):
            self.rescan_r(child)

    def rescan_tree_v(self, positions, radii, volumes, gammas, is_hydrogen):
        self._reset_root_and_atoms(positions, radii, volumes, gammas, is_hydrogen)
        self.rescan_r(0)

    def rescan_gamma_r(self, slot: int):
        ov = self.overlaps[slot]
        if ov.parent_index > 0:
            ov.gamma1i = self.overlaps[ov.parent_index].gamma1i + self.overlaps[ov.atom + 1].gamma1i
        for child in range(ov.children_start_index, ov.children_start_index + ov.children_count):
            self.rescan_gamma_r(child)

    def rescan_tree_g(self, gammas):
        self.overlaps[0].gamma1i = 0.0
        for iat in range(self.n_atoms):
            self.overlaps[iat + 1].gamma1i = float(gammas[iat])
        self.rescan_gamma_r(0)

    def n_children_under_slot_r(self, slot: int) -> int:
        ov = self.overlaps[slot]
        n = 0
        if ov.children_count > 0:
            n += ov.children_count
            for child in range(ov.children_start_index, ov.children_start_index + ov.children_count):
                n += self.n_children_under_slot_r(child)
        return n

    def print_tree(self):
        lines = ["slot level         G V           G A       Volume      Gamma1i      "
                 "Parent    ChStart    ChCount"]
        self._print_tree_r(0, lines)
        logger.info("\n".join(lines))

    def _print_tree_r(self, slot: int, lines: list[str]):
        ov = self.overlaps[slot]
        lines.append("%4d %5d %12.4e %12.4e %12.4e %12.4e %10d %10d %10d" % (
            slot, ov.level, ov.g.v, ov.g.a, ov.volume, ov.gamma1i,
            ov.parent_index, ov.children_start_index, ov.children_count))
        for child in range(ov.children_start_index, ov.children_start_index + ov.children_count):
            self._print_tree_r(child, lines)


class GaussVolResult(NamedTuple):
    volume: float
    energy: float
    force: torch.Tensor
    grad_v: torch.Tensor
    free_volume: torch.Tensor
    self_volume: torch.Tensor


class GaussVol:
    """Front end holding per-atom parameters and the overlap tree.

    Args:
        n_atoms: Number of atoms.
        radii: Atomic radii (default 1.0).
        volumes: Atomic volumes (default 0.0).
        gammas: Energy per unit volume for each atom (default 0.0).
        is_hydrogen: Atoms treated as volumeless (default none).
        min_overlap_volume: Overlaps at or below this volume are pruned.
    """

    def __init__(self, n_atoms: int, radii=None, volumes=None, gammas=None,
                 is_hydrogen=None, min_overlap_volume: float = MIN_GVOL):
        self.n_atoms = n_atoms
        self.tree = GaussianOverlapTree(n_atoms, min_overlap_volume)
        self.radii = torch.ones(n_atoms, dtype=DTYPE)
        self.volumes = torch.zeros(n_atoms, dtype=DTYPE)
        self.gammas = torch.zeros(n_atoms, dtype=DTYPE)
        self.is_hydrogen = [False] * n_atoms
        if radii is not None:
            self.set_radii(radii)
        if volumes is not None:
            self.set_volumes(volumes)
        if gammas is not None:
            self.set_gammas(gammas)
        if is_hydrogen is not None:
            if len(is_hydrogen) != n_atoms:
                raise GeometryMismatchError(
                    f"is_hydrogen has {len(is_hydrogen)} entries for {n_atoms} atoms")
            self.is_hydrogen = [bool(h) for h in is_hydrogen]

    def _per_atom(self, name: str, values) -> torch.Tensor:
        values = torch.as_tensor(values, dtype=DTYPE).flatten()
        if values.shape[0] != self.n_atoms:
            raise GeometryMismatchError(
                f"{name}: {values.shape[0]} values for {self.n_atoms} atoms")
        return values.clone()

    def set_radii(self, radii):
        self.radii = self._per_atom("radii", radii)

    def set_volumes(self, volumes):
        self.volumes = self._per_atom("volumes", volumes)

    def set_gammas(self, gammas):
        self.gammas = self._per_atom("gammas", gammas)

    def _positions(self, positions) -> torch.Tensor:
        positions = torch.as_tensor(positions, dtype=DTYPE).detach()
        if positions.shape != (self.n_atoms, 3):
            raise GeometryMismatchError(
                f"positions have shape {tuple(positions.shape)}, expected ({self.n_atoms}, 3)")
        return positions.clone()

    def compute_tree(self, positions):
        self.tree.compute_overlap_tree_r(self._positions(positions), self.radii, self.volumes,
                                         self.gammas, self.is_hydrogen)

    def compute_volume(self) -> GaussVolResult:
        """Volume, energy, forces and dE/dV of the current tree.

        ``grad_v`` is the energy gradient per unit atomic volume, i.e. divided
        by each atom's volume where that volume is positive.
        """
        if not self.tree.overlaps:
            raise RuntimeError("compute_tree must be called before compute_volume")
        result = self.tree.compute_volume_2r()
        grad_v = torch.where(self.volumes > 0,
                             result.volume_gradient / torch.where(self.volumes > 0, self.volumes, 1.0),
                             result.volume_gradient)
        return GaussVolResult(result.volume, result.energy, -result.gradient, grad_v,
                              result.free_volume, result.self_volume)

    def rescan_tree_volumes(self, positions):
        """Recompute overlap volumes for new positions without changing the topology."""
        if not self.tree.overlaps:
            raise RuntimeError("compute_tree must be called before rescan_tree_volumes")
        self.tree.rescan_tree_v(self._positions(positions), self.radii, self.volumes,
                                self.gammas, self.is_hydrogen)

    def rescan_tree_gammas(self):
        if not self.tree.overlaps:
            raise RuntimeError("compute_tree must be called before rescan_tree_gammas")
        self.tree.rescan_tree_g(self.gammas)

    def get_stats(self) -> list[int]:
        """Number of overlaps in the subtree of each atom."""
        return [self.tree.n_children_under_slot_r(atom + 1) for atom in range(self.n_atoms)]

    def print_tree(self):
        self.tree.print_tree()
