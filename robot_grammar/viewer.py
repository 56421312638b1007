"""Snapshots and interactive replay of a trajectory."""

import time

import matplotlib.pyplot as plt
import mujoco as mj
import numpy as np
import numpy.typing as npt
from mujoco import viewer

from robot_grammar import console
from robot_grammar.simulation import MujocoSimulation


class SnapshotRenderer:
    """Renders the current state of a simulation from a camera tracking one robot."""

    def __init__(
        self,
        robot_idx: int = 0,
        width: int = 640,
        height: int = 480,
        distance: float = 1.5,
        azimuth: float = 135.0,
        elevation: float = -20.0,
    ) -> None:
        self.robot_idx = robot_idx
        self.width = width
        self.height = height
        self.distance = distance
        self.azimuth = azimuth
        self.elevation = elevation

    def make_camera(self, sim: MujocoSimulation) -> mj.MjvCamera:
        camera = mj.MjvCamera()
        camera.type = mj.mjtCamera.mjCAMERA_FREE
        camera.lookat[:] = sim.get_robot_base_pose(self.robot_idx)[0]
        camera.distance = self.distance
        camera.azimuth = self.azimuth
        camera.elevation = self.elevation
        return camera

    def render(self, sim: MujocoSimulation) -> npt.NDArray[np.uint8]:
        """RGB pixels, top row first."""
        renderer = mj.Renderer(sim.model, height=self.height, width=self.width)
        try:
            renderer.update_scene(sim.data, camera=self.make_camera(sim))
            return renderer.render().copy()
        finally:
            renderer.close()


def save_image(pixels: npt.NDArray[np.uint8], path: str) -> bool:
    """Encode ``pixels`` to ``path``. Failures are reported, not raised."""
    try:
        plt.imsave(path, pixels)
    except (OSError, ValueError) as e:
        console.log(f"Failed to save image: {e}")
        return False
    return True


def view_trajectory(
    sim: MujocoSimulation,
    robot_idx: int,
    input_sequence: npt.NDArray[np.float64],
    interval: int,
) -> None:
    """
    Play ``input_sequence`` in real time until the window is closed.

    The simulation is returned to its starting state whenever the sequence
    runs out, and left there afterwards.
    """
    if input_sequence.shape[1] == 0:
        raise ValueError("Nothing to play: the input sequence is empty")
    time_step = sim.get_time_step()
    sim.save_state()
    with viewer.launch_passive(sim.model, sim.data) as handle:
        start = time.time()
        sim_time = 0.0
        i = j = 0
        while handle.is_running():
            current_time = time.time() - start
            while sim_time < current_time:
                sim.set_joint_target_positions(robot_idx, input_sequence[:, j])
                sim.step()
                sim_time += time_step
                i += 1
                if i >= interval:
                    i = 0
                    j += 1
                if j >= input_sequence.shape[1]:
                    i = j = 0
                    sim.restore_state()
            handle.sync()
    sim.restore_state()
