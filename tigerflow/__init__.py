# tigerflow/__init__.py

from .core import (
    PARALLEL_THRESHOLD,
    Graph,
    Layer,
    Neuron,
    Phase,
    connect,
)
from .errors import (
    BackendAllocationFailure,
    ConnectionConflict,
    ShapeMismatch,
    TigerflowError,
    UnsupportedOperation,
)
from .signal import ChannelType, Dim3, Signal, make_id
from .layers import (
    ActivationLayer,
    AddLayer,
    AveragePoolLayer,
    BackendType,
    BatchNormLayer,
    DeconvolutionLayer,
    FullyConnectedLayer,
    IdentityLayer,
    InputLayer,
)
from .optimizers import Adagrad, Adam, GradientDescent, Momentum, RMSprop, build_optimizer
from .persistence import (
    NeuralState,
    apply_state,
    layer_state,
    load_graph_state,
    read_neural_state,
    save_graph_state,
    write_neural_state,
)
from .record import record, Trace, PassEvent
from .data_helper import SampleDataset, load_demo_dataset
from .training import Trainer, TrainLoopConfig, evaluate, train_graph
from .diagnostics import (
    GradientWatcher,
    GradientSummary,
    describe_graph,
    plot_gradient_heatmap,
    visualize_layer_output,
)
from . import losses
from . import weight_init

__all__ = [
    "PARALLEL_THRESHOLD",
    "Graph",
    "Layer",
    "Neuron",
    "Phase",
    "connect",
    "BackendAllocationFailure",
    "ConnectionConflict",
    "ShapeMismatch",
    "TigerflowError",
    "UnsupportedOperation",
    "ChannelType",
    "Dim3",
    "Signal",
    "make_id",
    "ActivationLayer",
    "AddLayer",
    "AveragePoolLayer",
    "BackendType",
    "BatchNormLayer",
    "DeconvolutionLayer",
    "FullyConnectedLayer",
    "IdentityLayer",
    "InputLayer",
    "Adagrad",
    "Adam",
    "GradientDescent",
    "Momentum",
    "RMSprop",
    "build_optimizer",
    "NeuralState",
    "apply_state",
    "layer_state",
    "load_graph_state",
    "read_neural_state",
    "save_graph_state",
    "write_neural_state",
    "record",
    "Trace",
    "PassEvent",
    "SampleDataset",
    "load_demo_dataset",
    "Trainer",
    "TrainLoopConfig",
    "evaluate",
    "train_graph",
    "GradientWatcher",
    "GradientSummary",
    "describe_graph",
    "plot_gradient_heatmap",
    "visualize_layer_output",
    "losses",
    "weight_init",
]
