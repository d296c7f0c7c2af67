from setuptools import setup, find_packages

package_name = 'cargo_loading_service'

setup(
    name=package_name,
    version='0.1.0',
    packages=find_packages(include=[package_name, f"{package_name}.*"]),
    data_files=[
        ('share/ament_index/resource_index/packages',
         ['resource/' + package_name]),
        ('share/' + package_name, ['package.xml']),
        ('share/' + package_name + '/launch', ['launch/cargo_loading_service.launch.py']),
    ],
    install_requires=['setuptools'],
    extras_require={'test': ['pytest']},
    tests_require=['pytest'],
    zip_safe=True,
    maintainer='You',
    maintainer_email='you@example.com',
    description='Cargo loading task service for automated parking facilities',
    license='Apache-2.0',
    entry_points={
        'console_scripts': [
            'cargo_loading_service = cargo_loading_service.node:main',
        ],
    },
)
