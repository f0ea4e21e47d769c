"""Setup module for building linkhmm."""


from Cython.Build import cythonize
from setuptools import Extension, setup

extensions = [Extension("linkhmm_utils", ["linkhmm/linkhmm_utils.pyx"])]

setup_args = dict(
    ext_modules=cythonize(
        extensions, compiler_directives={"language_level": 3, "profile": False}
    )
)
setup(**setup_args)
