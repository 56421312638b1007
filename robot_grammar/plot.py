import matplotlib.pyplot as plt
import pandas as pd


def make_reward_plot(csv_filename, save_path=None, plot_y="total_reward"):
    """Total reward per episode, as logged by ``EpisodeRunner.run``."""
    plt.figure(figsize=(8, 4))
    df = pd.read_csv(csv_filename)
    y_data = df[plot_y]
    plt.plot(df["episode"], y_data, marker='o', markersize=3)
    plt.xlabel("Episode")
    plt.ylabel("Total reward")
    plt.title("Total Reward per Episode")
    plt.grid(True)
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path)
        plt.close()  # close figure
    else:
        plt.show()
