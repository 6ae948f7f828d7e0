"""
Hierarchy Visualization Tools

Simple matplotlib-based visualization for debugging and monitoring:
- Per-input prediction accuracy over time
- Layer firing raster (which layers ran on each step)
- Hidden code snapshots

Requires the `viz` extra (matplotlib).

Usage:
    from chunkbrain.visualization import HierarchyVisualizer

    viz = HierarchyVisualizer(hierarchy)
    viz.start_recording()

    for inputs in stream:
        viz.record_step(inputs)      # before hierarchy.step(inputs)
        hierarchy.step(inputs)

    viz.plot_accuracy()
    viz.save_all("session_plots/")
"""

import logging
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np

if TYPE_CHECKING:
    from .hierarchy import Hierarchy

logger = logging.getLogger(__name__)


@dataclass
class RecordedStep:
    """Single step of recorded data."""
    step: int
    accuracy: List[float] = field(default_factory=list)  # per input
    fired: List[bool] = field(default_factory=list)  # per layer, on the previous step


class HierarchyVisualizer:
    """
    Records how well a hierarchy predicts its inputs and when layers fire.

    Accuracy for input i is the fraction of chunks where the prediction
    made on the previous step matches the input about to be fed.
    """

    def __init__(self, hierarchy: 'Hierarchy', max_history: int = 1000):
        """
        Initialize visualizer.

        Args:
            hierarchy: Hierarchy instance to monitor
            max_history: Maximum steps to keep in memory
        """
        self.hierarchy = hierarchy
        self.max_history = max_history
        self.history: deque = deque(maxlen=max_history)
        self.recording = False
        self._step = 0
        self._last_counts: Optional[List[int]] = None

    def start_recording(self):
        self.recording = True
        self.history.clear()
        self._step = 0
        self._last_counts = self.hierarchy.get_update_counts()

    def stop_recording(self):
        self.recording = False

    def record_step(self, inputs: Sequence[Sequence[int]]):
        """Record accuracy of the standing predictions against the next inputs."""
        if not self.recording:
            return

        accuracy = []
        for i, code in enumerate(inputs):
            prediction = self.hierarchy.get_prediction(i)
            accuracy.append(float(np.mean(prediction == np.asarray(code))))

        counts = self.hierarchy.get_update_counts()
        fired = [now > before for now, before in zip(counts, self._last_counts)]
        self._last_counts = counts

        self.history.append(RecordedStep(step=self._step, accuracy=accuracy, fired=fired))
        self._step += 1

    def get_arrays(self) -> Dict[str, np.ndarray]:
        """Convert history to numpy arrays for plotting."""
        if not self.history:
            return {}

        steps = list(self.history)
        return {
            'step': np.array([s.step for s in steps]),
            'accuracy': np.array([s.accuracy for s in steps]),
            'fired': np.array([s.fired for s in steps], dtype=bool),
        }

    def plot_accuracy(self, figsize: tuple = (12, 6), save_path: Optional[str] = None, window: int = 20):
        """
        Plot per-input prediction accuracy and the layer firing raster.

        Args:
            figsize: Figure size (width, height)
            save_path: Optional path to save figure
            window: Moving-average window for the accuracy curves
        """
        data = self.get_arrays()
        if not data:
            logger.warning("No data recorded yet. Call record_step() before hierarchy.step()")
            return None

        fig, (ax1, ax2) = plt.subplots(2, 1, figsize=figsize, sharex=True)
        fig.suptitle('Hierarchy Prediction', fontsize=14, fontweight='bold')

        steps = data['step']
        accuracy = data['accuracy']
        kernel = np.ones(max(1, min(window, len(steps)))) / max(1, min(window, len(steps)))
        for i in range(accuracy.shape[1]):
            smoothed = np.convolve(accuracy[:, i], kernel, mode='same')
            ax1.plot(steps, smoothed, label=f'Input {i}', linewidth=2)
        ax1.set_ylabel('Accuracy')
        ax1.set_ylim(0, 1.05)
        ax1.set_title('Prediction Accuracy')
        ax1.legend(loc='lower right', fontsize=8)
        ax1.grid(True, alpha=0.3)

        fired = data['fired']
        ax2.imshow(fired.T.astype(int), aspect='auto', cmap='Greys', interpolation='nearest',
                   extent=(steps[0] - 0.5, steps[-1] + 0.5, fired.shape[1] - 0.5, -0.5))
        ax2.set_ylabel('Layer')
        ax2.set_xlabel('Step')
        ax2.set_title('Layer Firing')

        plt.tight_layout()

        if save_path:
            plt.savefig(save_path, dpi=150, bbox_inches='tight')
            logger.info(f"Saved plot to {save_path}")

        return fig

    def plot_hidden_codes(self, figsize: tuple = (12, 4), save_path: Optional[str] = None):
        """
        Show each layer's current hidden code as an image of winning cells.

        Args:
            figsize: Figure size
            save_path: Optional path to save figure
        """
        num_layers = self.hierarchy.num_layers
        fig, axes = plt.subplots(1, num_layers, figsize=figsize, squeeze=False)

        for l in range(num_layers):
            view = self.hierarchy.get_layer(l)
            gx, gy = view.hidden_size
            ax = axes[0, l]
            im = ax.imshow(np.asarray(view.hidden_code).reshape(gy, gx), cmap='viridis',
                           vmin=0, vmax=view.chunk_size ** 2 - 1)
            ax.set_title(f'Layer {l}')
            ax.set_xticks([])
            ax.set_yticks([])
        fig.colorbar(im, ax=axes.ravel().tolist(), label='Active cell')

        if save_path:
            plt.savefig(save_path, dpi=150, bbox_inches='tight')

        return fig

    def save_all(self, output_dir: str = "hierarchy_plots"):
        """
        Save all available plots to a directory.

        Args:
            output_dir: Directory to save plots
        """
        os.makedirs(output_dir, exist_ok=True)

        timestamp = time.strftime("%Y%m%d_%H%M%S")

        self.plot_accuracy(save_path=f"{output_dir}/accuracy_{timestamp}.png")
        self.plot_hidden_codes(save_path=f"{output_dir}/hidden_{timestamp}.png")

        logger.info(f"Saved all plots to {output_dir}/")

    def show(self):
        """Show all current plots (interactive mode)."""
        plt.show()
