"""Grow a robot from a rule file and optionally optimise, render and save its gait."""

# Standard library
import argparse
import os
from pathlib import Path

# Third-party libraries
import numpy as np

# Local libraries
from robot_grammar import config, console
from robot_grammar.builder import Prop, PropShape, build_robot
from robot_grammar.episodes import EpisodeRunner
from robot_grammar.graph_io import GraphFileError, load_graphs, save_graph_as_json
from robot_grammar.objectives import SumOfSquaresObjective
from robot_grammar.optim import DefaultInputSampler
from robot_grammar.plot import make_reward_plot
from robot_grammar.rules import apply_rule_sequence, create_rule_from_graph, make_seed_graph
from robot_grammar.simulation import MujocoSimulation, find_ground_offset
from robot_grammar.value import FCValueEstimator, NullValueEstimator
from robot_grammar.viewer import SnapshotRenderer, save_image, view_trajectory

IDENTITY = [1.0, 0.0, 0.0, 0.0]


def _rule_index(value: str) -> int:
    idx = int(value)
    if idx < 0:
        raise argparse.ArgumentTypeError(f"rule index must be non-negative, got {idx}")
    return idx


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="robot_grammar", description="Robot design graph viewer.")
    parser.add_argument("graph_file", help="Graph file (.dot or .json)")
    parser.add_argument("rule_sequence", nargs="*", type=_rule_index, help="Rule sequence to apply")
    parser.add_argument("-s", "--seed", type=int, default=0, help="Random seed")
    parser.add_argument("-j", "--jobs", type=int, default=0, help="Number of jobs/threads (0 = all cores)")
    parser.add_argument("-e", "--episodes", type=int, default=config.EPISODE_COUNT, help="Number of episodes")
    parser.add_argument("-o", "--optim", action="store_true", help="Optimize a trajectory")
    parser.add_argument("-r", "--render", action="store_true", help="Render the trajectory")
    parser.add_argument("--save-image", type=str, default=None, help="Save a snapshot to this path")
    parser.add_argument("--save-graph", type=str, default=None, help="Save the grown graph as JSON")
    parser.add_argument("--rewards-csv", type=str, default=None, help="Log episode rewards to this CSV")
    parser.add_argument("--plot", type=str, default=None, help="Save a reward plot to this path")
    parser.add_argument("--value-estimator", choices=["null", "fc"], default="null")
    args = parser.parse_args(argv)
    if args.jobs < 0:
        parser.error("--jobs must be non-negative")
    if args.episodes < 0:
        parser.error("--episodes must be non-negative")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)

    # --- GRAMMAR --- #
    try:
        rule_graphs = load_graphs(args.graph_file)
    except GraphFileError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    console.log(f"Number of graphs: {len(rule_graphs)}")
    try:
        rules = [create_rule_from_graph(graph) for graph in rule_graphs]
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1

    robot_graph = apply_rule_sequence(make_seed_graph(), rules, args.rule_sequence)
    if args.save_graph:
        save_graph_as_json(robot_graph, args.save_graph)
    try:
        robot = build_robot(robot_graph)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1

    # --- SIMULATION SETUP --- #
    floor = Prop(PropShape.BOX, 0.0, config.FLOOR_FRICTION, tuple(config.FLOOR_HALF_EXTENTS))
    z_offset = find_ground_offset(robot, tuple(config.ROBOT_ORIENTATION))

    template = MujocoSimulation(config.TIME_STEP)
    template.add_prop(floor, config.FLOOR_POSITION, IDENTITY)
    template.add_robot(robot, [0.0, 0.0, z_offset], config.ROBOT_ORIENTATION)
    make_sim_fn = template.make_factory()

    main_sim = make_sim_fn()
    robot_idx = main_sim.find_robot_index(robot)
    dof_count = main_sim.get_robot_dof_count(robot_idx)
    thread_count = args.jobs or max(os.cpu_count() or 1, 1)

    if args.value_estimator == "fc":
        value_estimator = FCValueEstimator(main_sim, robot_idx, seed=args.seed)
    else:
        value_estimator = NullValueEstimator()

    input_sequence = np.zeros((dof_count, config.EPISODE_LEN))
    if args.optim:
        runner = EpisodeRunner(
            main_sim,
            make_sim_fn,
            SumOfSquaresObjective(robot_idx=robot_idx),
            value_estimator,
            DefaultInputSampler(),
            seed=args.seed,
            thread_count=thread_count,
            robot_idx=robot_idx,
        )
        csv_path = args.rewards_csv
        if args.plot and csv_path is None:
            csv_path = config.DATA / "rewards.csv"
        results = runner.run(args.episodes, csv_path=csv_path)
        if results:
            input_sequence = results[-1].input_sequence
        if args.plot and results:
            Path(args.plot).parent.mkdir(parents=True, exist_ok=True)
            make_reward_plot(csv_path, save_path=args.plot)

    main_sim.save_state()

    if args.save_image:
        pixels = SnapshotRenderer(robot_idx).render(main_sim)
        save_image(pixels, args.save_image)

    if args.render and input_sequence.shape[1] > 0:
        view_trajectory(main_sim, robot_idx, input_sequence, config.INTERVAL)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
