"""Shared plotting utilities for osrwsim.

Nord-inspired styling plus plots of the OSRW free-energy profile and
recursion kernel.
"""

import os

import matplotlib.pyplot as plt
import torch


# Publication-ready figure sizes (in inches)
FIG_WIDTH_SINGLE = 3.25
FIG_WIDTH_DOUBLE = 6.75
GOLDEN_RATIO = (5**0.5 - 1) / 2

FONT_SIZE_TITLE = 10
FONT_SIZE_LABEL = 9
FONT_SIZE_TICK = 8
FONT_SIZE_LEGEND = 8

LW = 1.5
MS = 4

PLOT_STYLE = {
    "font.family": "monospace",
    "font.monospace": ["JetBrains Mono", "DejaVu Sans Mono", "Menlo", "Monaco"],
    "font.size": FONT_SIZE_LABEL,
    "axes.titlesize": FONT_SIZE_TITLE,
    "axes.labelsize": FONT_SIZE_LABEL,
    "xtick.labelsize": FONT_SIZE_TICK,
    "ytick.labelsize": FONT_SIZE_TICK,
    "legend.fontsize": FONT_SIZE_LEGEND,
    "axes.grid": True,
    "grid.alpha": 0.2,
    "grid.linewidth": 0.5,
    "axes.spines.top": False,
    "axes.spines.right": False,
    "axes.titlepad": 8.0,
    "axes.labelpad": 5.0,
    "xtick.direction": "out",
    "ytick.direction": "out",
    "legend.frameon": True,
    "legend.framealpha": 0.95,
    "legend.edgecolor": "0.9",
    "figure.facecolor": "#FAFBFC",
    "axes.facecolor": "#FFFFFF",
    "savefig.facecolor": "#FAFBFC",
    "lines.linewidth": LW,
}

COLORS = {
    "blue": "#5E81AC",
    "orange": "#D08770",
    "green": "#A3BE8C",
    "red": "#BF616A",
    "purple": "#B48EAD",
    "cyan": "#88C0D0",
    "gray": "#4C566A",

    # Semantic aliases
    "flambda": "#5E81AC",
    "free_energy": "#D08770",
    "lambda": "#88C0D0",
    "theory": "#4C566A",
    "fill": "#E5E9F0",
}


def apply_style():
    """Apply the shared plotting style to matplotlib."""
    plt.rcParams.update(PLOT_STYLE)


def get_figsize(width, nrows=1, ncols=1, aspect=None):
    """
    Calculate figure size based on width and subplot grid.

    Args:
        width (float): Figure width in inches (use FIG_WIDTH_SINGLE or FIG_WIDTH_DOUBLE).
        nrows (int): Number of subplot rows.
        ncols (int): Number of subplot columns.
        aspect (float, optional): Target aspect ratio (height/width) per subplot.
                                  Defaults to GOLDEN_RATIO.

    Returns:
        tuple: (width, height) in inches.
    """
    if aspect is None:
        aspect = GOLDEN_RATIO
    height = width * (nrows / ncols) * aspect
    return (width, height)


def get_assets_dir():
    """Get the assets directory path relative to this module."""
    return os.path.join(os.path.dirname(__file__), "..", "assets")


def plot_free_energy(ax, flambda, reference=None):
    """Plot <dU/dL> per lambda bin and its running integral G(λ).

    Args:
        ax: Matplotlib axes.
        flambda: Ensemble-averaged dU/dL at each lambda bin center.
        reference: Optional exact dU/dL at the same lambdas.

    Returns:
        The twin axes holding G(λ).
    """
    flambda = torch.as_tensor(flambda, dtype=torch.float64).cpu()
    n = flambda.shape[0]
    lambdas = torch.linspace(0.0, 1.0, n, dtype=torch.float64)
    dl = 1.0 / (n - 1)
    widths = torch.full((n,), dl, dtype=torch.float64)
    widths[0] = widths[-1] = 0.5 * dl
    g = torch.cumsum(flambda * widths, dim=0)

    ax.plot(lambdas, flambda, color=COLORS["flambda"], label=r"$\langle dU/d\lambda \rangle$")
    if reference is not None:
        ax.plot(lambdas, torch.as_tensor(reference).cpu(), "--", color=COLORS["theory"],
                lw=LW * 0.8, label="exact")
    ax.set_xlabel(r"$\lambda$")
    ax.set_ylabel(r"$dU/d\lambda$ (kcal/mol)")
    ax.legend(loc="upper left")

    ax_g = ax.twinx()
    ax_g.plot(lambdas, g, color=COLORS["free_energy"], label=r"$G(\lambda)$")
    ax_g.set_ylabel(r"$G$ (kcal/mol)")
    ax_g.grid(False)
    return ax_g


def plot_recursion_kernel(ax, kernel, min_fl, dfl, cmap="Blues"):
    """Heat map of a recursion kernel, lambda along x and dU/dL along y.

    Only the populated dU/dL range is shown.
    """
    kernel = torch.as_tensor(kernel, dtype=torch.float64).cpu()
    populated = torch.nonzero(kernel.sum(dim=0) > 0).flatten()
    lo, hi = (populated[0].item(), populated[-1].item() + 1) if len(populated) else (0, kernel.shape[1])
    extent = (0.0, 1.0, min_fl + lo * dfl, min_fl + hi * dfl)
    im = ax.imshow(kernel[:, lo:hi].T, origin="lower", aspect="auto", extent=extent, cmap=cmap)
    ax.set_xlabel(r"$\lambda$")
    ax.set_ylabel(r"$dU/d\lambda$ (kcal/mol)")
    ax.grid(False)
    return im
