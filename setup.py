from setuptools import setup, find_packages


setup(
    name='torch_dmat',
    version='0.1.0',
    packages=find_packages(include=['torch_dmat', 'torch_dmat.*']),
    install_requires=[
        'torch>=1.8.0',
    ],
    extras_require={
        'test':['pytest','numpy'],
        'docs':['sphinx', 'furo']
    }
)
