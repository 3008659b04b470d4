MAX = "Max"
RESHAPE = "Reshape"
TRANSPOSE = "Transpose"
ADD = "Add"
MULTIPLY = "Multiply"
SUM = "Sum"
CAST = "Cast"
EQUAL = "Equal"
FILL = "Fill"
