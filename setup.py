from setuptools import setup, find_packages
from os import path
import re

package_name="onnx2stub"
root_dir = path.abspath(path.dirname(__file__))

with open(path.join(root_dir, "README.md")) as f:
    long_description = f.read()

with open(path.join(root_dir, package_name, '__init__.py')) as f:
    init_text = f.read()
    version = re.search(r'__version__\s*=\s*[\'\"](.+?)[\'\"]', init_text).group(1)

setup(
    name=package_name,
    version=version,
    description=\
        "Generate placeholder C++ stubs for ONNX operators that have no implementation "+
        "on the target microcontroller runtime, together with an op coverage report.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT License",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={
        "onnx2stub.stub_builder": ["templates/*.cpp"],
    },
    include_package_data=True,
    platforms=["linux", "unix"],
    python_requires=">=3.8",
    install_requires=[
        "numpy",
        "onnx>=1.13",
        "jinja2>=3.0",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        'console_scripts': [
            "onnx2stub=onnx2stub:main"
        ]
    }
)
