__version__ = '0.1.0'

from onnx2stub.onnx2stub import generate, main
