from setuptools import setup, find_packages

setup(
    name="templatestore",
    version="0.1.0",
    packages=find_packages(include=["templatestore", "templatestore.*", "catalog", "catalog.*", "orders", "orders.*"]),
    include_package_data=True,
    install_requires=[
        "Django>=4.2",
        "djangorestframework>=3.14",
        "stripe>=8.0,<12",
        "python-dotenv>=1.0",
        "django-anymail[mailgun]>=10.0",
        "django-cors-headers>=4.0",
        "whitenoise>=6.5",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-django>=4.5",
        ],
    },
    description="Template store backend: catalog, Stripe checkout and webhook-driven order reconciliation for Django.",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Framework :: Django",
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
        "License :: OSI Approved :: MIT License"
    ],
    python_requires='>=3.9',
)
