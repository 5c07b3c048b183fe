from setuptools import setup, find_packages

name = 'spectramap'
LONG_DESCRIPTION = 'Neighborhood-preserving embeddings of high dimensional point clouds: fuzzy neighbor graphs, spectral and diffusion map initialization, parallel stochastic layout optimization.'
version = "0.1"

setup_args = dict(
    name=name,
    version=version,
    description=LONG_DESCRIPTION,
    include_package_data=True,
    install_requires=[ 'numpy', 'scipy', 'scikit-learn>=1.6', 'numba', 'pynndescent', 'joblib', 'traitlets', 'hydra-core>=1.2', 'omegaconf', 'xarray' ],
    extras_require={ 'test': [ 'pytest' ] },
    packages=find_packages(),
    package_data={ 'spectramap': [ 'conf/*.yaml' ] },
    zip_safe=False,
    author='Thomas Maxwell',
    author_email='thomas.maxwell@nasa.gov',
    url='https://github.com/nasa-nccs-cds/spectramap',
    data_files=[ ],
    keywords=[ 'umap', 'manifold learning', 'diffusion maps', 'embedding' ],
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering :: Information Analysis',
        'Programming Language :: Python :: 3',
    ],
)

setup(**setup_args)
