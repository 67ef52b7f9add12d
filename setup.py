from setuptools import setup, find_packages

with open('requirements.txt') as f:
    requirements = f.readlines()

with open('test-requirements.txt') as f:
    test_requirements = f.readlines()

setup(name='ci-orchestrator',
      description='Pipeline orchestrator building container images and deploying them',
      version='1.0.0',
      classifiers=[
          "Programming Language :: Python :: 3",
          "Topic :: Software Development :: Build Tools"
      ],
      keywords='ci cd pipeline build deploy docker kubernetes webhook',
      author='FIXME',
      author_email='FIXME',
      license='MIT',
      packages=find_packages(exclude=['tests', 'tests.*']),
      include_package_data=True,
      zip_safe=False,
      python_requires='>=3.8',
      install_requires=requirements,
      tests_require=test_requirements,
      extras_require={'test': test_requirements},
      entry_points={
          'console_scripts': ['ci_orchestrator_daemon = ci_orchestrator.scheduler.main:main',
                              'ci_orchestrator_manage = ci_orchestrator.manage:main']
      },
      data_files=[('/etc/ci-orchestrator/', ['conf/config.py'])],
      )
